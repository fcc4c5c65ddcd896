"""
Main application entry point.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()
from typing import Any, Optional

from firestocks.config import AppConfig
from firestocks.deadline import Deadline, PriceCheckTimeout
from firestocks.database.connection import Database
from firestocks.database.models import Prediction, User
from firestocks.database.repository import (
    UserRepository,
    PredictionRepository,
    UsageRepository,
    HistoryRepository,
)
from firestocks.data.fetcher import PredictionFetcher, QuoteProvider, create_quote_provider
from firestocks.data.market import MarketCalendar
from firestocks.rules.engine import PredictionEvaluator
from firestocks.rules.types import Outcome
from firestocks.notifiers.base import NotifierFactory
from firestocks.notifiers.email import EmailNotifier
from firestocks.services.history import RunHistory
from firestocks.services.quota import PriceCheckQuota, QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass
class PriceCheckRun:
    """One execution of the price-check pipeline for one user."""

    user_id: str
    started_at: datetime
    usage_count: int = 0
    remaining: int = 0
    outcomes: list[Outcome] = field(default_factory=list)
    success: bool = True
    timed_out: bool = False
    message: str = ""
    closed_posts_skipped: int = 0
    history_id: Optional[str] = None

    @property
    def checked(self) -> int:
        return len(self.outcomes)

    @property
    def updated(self) -> int:
        return sum(1 for o in self.outcomes if o.counts_as_update)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return 504 if self.timed_out else 500

    def to_response(self) -> dict[str, Any]:
        """Response body of the run trigger endpoint."""
        return {
            "success": self.success,
            "message": self.message,
            "checkedPosts": self.checked,
            "updatedPosts": self.updated,
            "usageCount": self.usage_count,
            "remainingChecks": self.remaining,
            "closedPostsSkipped": self.closed_posts_skipped,
            "updateSuccess": all(o.persisted for o in self.outcomes),
            "results": [o.to_dict() for o in self.outcomes],
        }


class FireStocksApp:
    """Main FireStocks application."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        provider: Optional[QuoteProvider] = None,
        email_notifier: Optional[EmailNotifier] = None,
    ):
        """
        Initialize FireStocks app.

        Args:
            db: Database instance
            config: Application configuration, defaults when omitted
            provider: Quote provider, built from config when omitted
            email_notifier: Run-summary email sender, built from config when omitted
        """
        self.db = db
        self.config = config or AppConfig()

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.prediction_repo = PredictionRepository(db)

        # Initialize services
        source = self.config.data_source
        schedule = self.config.schedule
        self.provider = provider or create_quote_provider(
            source.provider,
            api_key=source.api_key,
            base_url=source.base_url,
            request_timeout=source.request_timeout_seconds,
        )
        self.fetcher = PredictionFetcher(
            self.prediction_repo,
            self.provider,
            calendar=MarketCalendar(schedule.timezone, schedule.market_open, schedule.market_close),
            market_hours_only=schedule.market_hours_only,
        )
        self.evaluator = PredictionEvaluator(self.prediction_repo)
        self.quota = PriceCheckQuota(
            UsageRepository(db), self.config.price_check.max_daily_checks
        )
        self.history = RunHistory(
            HistoryRepository(db),
            max_entries=self.config.price_check.history_max_entries,
            max_retries=self.config.advanced.max_retries,
            retry_delay_seconds=self.config.advanced.retry_delay_seconds,
        )

        email_config = self.config.notifications.email
        if email_notifier is None and email_config.enabled:
            email_notifier = NotifierFactory.create({"type": "email", **vars(email_config)})
        self.email_notifier = email_notifier

    def run_check(self) -> list[PriceCheckRun]:
        """Run a price check for every user with open predictions."""
        runs = []
        for user in self.user_repo.list_all():
            if not self.prediction_repo.list_open(user.id):
                continue
            try:
                runs.append(self.run_price_check(user.id))
            except QuotaExceededError as e:
                logger.warning(f"Skipping user {user.id}: {e}")
            except Exception as e:
                logger.error(f"Error checking user {user.id}: {e}")
        return runs

    def run_price_check(self, user_id: str, now: Optional[datetime] = None) -> PriceCheckRun:
        """
        Run the pipeline for one user: quota, fetch, evaluate, notify.

        Writes committed before a timeout or failure stay committed; the run
        is still recorded in history with its partial outcomes.

        Raises:
            ValueError: If user_id is empty
            QuotaExceededError: If today's checks are used up
        """
        if not user_id:
            raise ValueError("user_id is required")

        now = now or datetime.now(timezone.utc)
        usage_count, remaining = self.quota.consume(user_id, now)
        run = PriceCheckRun(
            user_id=user_id,
            started_at=now,
            usage_count=usage_count,
            remaining=remaining,
        )
        deadline = Deadline(self.config.price_check.run_timeout_seconds)
        logger.info(f"Starting price check for user {user_id} ({usage_count} today)")

        try:
            # Counted before this run closes anything
            run.closed_posts_skipped = self.prediction_repo.count_closed(user_id)
            priced = self.fetcher.fetch(user_id, now=now, deadline=deadline)
            self.evaluator.evaluate_batch(
                priced, now, deadline=deadline, on_outcome=run.outcomes.append
            )
        except PriceCheckTimeout:
            logger.error(f"Price check for user {user_id} timed out after {run.checked} posts")
            run.success = False
            run.timed_out = True
            run.message = "Price check timed out"
        except Exception as e:
            logger.exception(f"Price check for user {user_id} failed: {e}")
            run.success = False
            run.message = f"Failed to check post prices: {e}"

        if run.success:
            if run.checked == 0:
                run.message = "No open posts to check"
            else:
                run.message = f"Checked {run.checked} posts, updated {run.updated}"

        self._notify(run)
        logger.info(f"Price check for user {user_id} finished: {run.message}")
        return run

    def _notify(self, run: PriceCheckRun) -> None:
        """Fan a finished run out to history and, when enabled, email."""
        run.history_id = self.history.record(run.user_id, run.to_response(), run.started_at)

        if self.email_notifier is None:
            return
        if not any(o.classification.is_terminal for o in run.outcomes):
            return

        user = self.user_repo.get_by_id(run.user_id)
        if not user or not user.email:
            return

        result = self.email_notifier.send_run_summary(user.email, run.outcomes, run.started_at)
        if not result.success:
            logger.warning(f"Run summary email to {user.email} failed: {result.error}")

    def create_prediction(self, prediction: Prediction) -> Prediction:
        """
        Store a new prediction.

        Raises:
            ValueError: If required fields are missing
        """
        if not prediction.user_id:
            raise ValueError("user_id is required")
        if not prediction.symbol:
            raise ValueError("symbol is required")
        prediction.symbol = prediction.symbol.upper()

        # Users are provisioned by the auth layer; mirror unknown ids locally
        if self.user_repo.get_by_id(prediction.user_id) is None:
            self.user_repo.create(User(id=prediction.user_id))

        created = self.prediction_repo.create(prediction)
        logger.info(f"Created post {created.id} ({created.symbol}) for user {created.user_id}")
        return created


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="FireStocks Price Check Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--user", help="Only check this user's posts")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="List open posts without checking prices"
    )

    args = parser.parse_args()

    # Load config
    from firestocks.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    # Run app
    app = FireStocksApp(db=db, config=config)

    if args.dry_run:
        logger.info("Dry run mode - no prices will be checked")
        users = [args.user] if args.user else [u.id for u in app.user_repo.list_all()]
        for user_id in users:
            for prediction in app.prediction_repo.list_open(user_id):
                logger.info(f"{user_id}: {prediction.quote_symbol} open")
    elif args.user:
        run = app.run_price_check(args.user)
        logger.info(f"Result: {run.message}")
    else:
        app.run_check()

    db.close()


if __name__ == "__main__":
    main()
