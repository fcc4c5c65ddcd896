"""
Integration tests.
End-to-end tests for the complete price-check flow.
"""

import json
import threading
import time

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime, timedelta, timezone

from firestocks.config import AppConfig, PriceCheckConfig
from firestocks.data.fetcher import Quote, QuoteProvider, QuoteUnavailableError
from firestocks.database.connection import Database
from firestocks.database.models import Prediction, User
from firestocks.database.repository import PredictionRepository, UserRepository
from firestocks.main import Deadline, FireStocksApp, PriceCheckTimeout
from firestocks.cli import add_post, add_user, export_history
from firestocks.notifiers.base import NotificationResult
from firestocks.rules.types import Classification


class StaticProvider(QuoteProvider):
    """Returns fixed prices; unknown symbols have no data."""

    name = "static"

    def __init__(self, prices):
        self.prices = prices

    def get_quote(self, symbol, timeout=None):
        if symbol not in self.prices:
            raise QuoteUnavailableError(f"Invalid symbol or no data available: {symbol}")
        return Quote(symbol=symbol, price=self.prices[symbol], timestamp=datetime.now(timezone.utc))


class TestPriceCheckFlow:
    """Test the full run: quota, fetch, evaluate, history, email."""

    @pytest.fixture
    def provider(self):
        return StaticProvider({"AAPL": 125.0, "MSFT": 85.0, "NVDA": 105.0})

    @pytest.fixture
    def app(self, db, provider):
        return FireStocksApp(db=db, config=AppConfig(), provider=provider)

    def test_mixed_outcomes(self, db, app, user, make_prediction, now):
        """Should close hits, update movers and report counts."""
        make_prediction("AAPL")
        make_prediction("MSFT")
        make_prediction("NVDA")

        run = app.run_price_check(user.id, now=now)
        response = run.to_response()

        assert response["success"] is True
        assert response["message"] == "Checked 3 posts, updated 3"
        assert response["checkedPosts"] == 3
        assert response["updatedPosts"] == 3
        assert response["usageCount"] == 1
        assert response["remainingChecks"] == 99
        assert response["closedPostsSkipped"] == 0
        assert response["updateSuccess"] is True
        assert [r["classification"] for r in response["results"]] == [
            "target_reached",
            "stop_loss_triggered",
            "checked_no_change",
        ]
        assert len(PredictionRepository(db).list_open(user.id)) == 1

    def test_closed_posts_counted_before_run(self, db, app, user, make_prediction, now):
        """Should only count predictions that were closed before this run."""
        earlier = make_prediction("MSFT")
        PredictionRepository(db).apply_update(earlier.id, 0, {"closed": True})
        make_prediction("AAPL")

        run = app.run_price_check(user.id, now=now)

        assert run.checked == 1
        assert run.outcomes[0].closed is True
        assert run.to_response()["closedPostsSkipped"] == 1

    def test_no_data_does_not_fail_run(self, app, user, make_prediction, now):
        """Should succeed when some symbols have no quote."""
        make_prediction("AAPL")
        make_prediction("NVDA")
        make_prediction("GONE")

        run = app.run_price_check(user.id, now=now)

        assert run.success is True
        assert run.status_code == 200
        assert run.checked == 3
        assert run.outcomes[2].classification == Classification.NO_DATA
        assert run.updated == 2

    def test_unchanged_price_not_counted(self, db, user, make_prediction, now):
        """Should not count predictions whose price did not move."""
        make_prediction("NVDA", initial=105.0)
        app = FireStocksApp(db=db, provider=StaticProvider({"NVDA": 105.0}))

        run = app.run_price_check(user.id, now=now)

        assert run.checked == 1
        assert run.updated == 0

    def test_no_open_posts(self, app, user, now):
        """Should report that there was nothing to check."""
        run = app.run_price_check(user.id, now=now)
        assert run.success is True
        assert run.message == "No open posts to check"

    def test_history_recorded(self, app, user, make_prediction, now):
        """Should store the run in history newest first."""
        make_prediction("AAPL")
        first = app.run_price_check(user.id, now=now)
        second = app.run_price_check(user.id, now=now + timedelta(minutes=1))

        history = app.history.list(user.id)
        assert [h["id"] for h in history] == [second.history_id, first.history_id]
        assert history[1]["summary"]["checkedPosts"] == 1
        assert history[0]["summary"]["checkedPosts"] == 0

    def test_quota_exhausted(self, db, provider, user, now):
        """Should refuse runs beyond the daily limit."""
        from firestocks.services.quota import QuotaExceededError

        config = AppConfig(price_check=PriceCheckConfig(max_daily_checks=1))
        app = FireStocksApp(db=db, config=config, provider=provider)
        app.run_price_check(user.id, now=now)

        with pytest.raises(QuotaExceededError):
            app.run_price_check(user.id, now=now)

    def test_empty_user(self, app):
        """Should require a user id."""
        with pytest.raises(ValueError):
            app.run_price_check("")

    def test_timeout_returns_partial_results(self, app, user, make_prediction, now):
        """Should stop at the deadline and keep what was written."""
        first = make_prediction("AAPL")
        second = make_prediction("NVDA")
        calls = []

        def clock():
            # Eight reads fit in the budget: creation, three per quote, first evaluation
            calls.append(None)
            return 0.0 if len(calls) <= 8 else 500.0

        with patch("firestocks.main.Deadline", lambda seconds: Deadline(seconds, clock=clock)):
            run = app.run_price_check(user.id, now=now)

        assert run.success is False
        assert run.timed_out is True
        assert run.status_code == 504
        assert run.message == "Price check timed out"
        assert run.checked == 1
        assert run.history_id is not None
        repo = PredictionRepository(app.db)
        assert repo.get_by_id(first.id).closed is True
        assert repo.get_by_id(second.id).current_price == 100.0

    def test_stuck_quote_bounded_by_run_timeout(self, db, user, make_prediction, now):
        """Should give up on a hanging provider at the run deadline."""
        release = threading.Event()

        class HangingProvider(QuoteProvider):
            name = "hanging"

            def get_quote(self, symbol, timeout=None):
                release.wait(5)
                raise QuoteUnavailableError(symbol)

        config = AppConfig(price_check=PriceCheckConfig(run_timeout_seconds=0.3))
        app = FireStocksApp(db=db, config=config, provider=HangingProvider())
        make_prediction("AAPL")

        started = time.monotonic()
        try:
            run = app.run_price_check(user.id, now=now)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 1.0
        assert run.timed_out is True
        assert run.status_code == 504
        assert run.history_id is not None

    def test_unexpected_error(self, db, user, make_prediction, now):
        """Should report failures as an unsuccessful run."""
        make_prediction("AAPL")
        app = FireStocksApp(db=db, provider=StaticProvider({"AAPL": 125.0}))
        app.prediction_repo.count_closed = MagicMock(side_effect=RuntimeError("db gone"))

        run = app.run_price_check(user.id, now=now)

        assert run.success is False
        assert run.status_code == 500
        assert run.message == "Failed to check post prices: db gone"

    def test_email_summary_on_transition(self, db, provider, user, make_prediction, now):
        """Should email the user when a prediction closes."""
        email = MagicMock()
        email.send_run_summary.return_value = NotificationResult(success=True, channel="email")
        app = FireStocksApp(db=db, provider=provider, email_notifier=email)
        make_prediction("AAPL")

        app.run_price_check(user.id, now=now)

        email.send_run_summary.assert_called_once()
        recipient, outcomes, checked_at = email.send_run_summary.call_args.args
        assert recipient == "trader@example.com"
        assert checked_at == now

    def test_no_email_without_transition(self, db, provider, user, make_prediction, now):
        """Should stay quiet when nothing closed."""
        email = MagicMock()
        app = FireStocksApp(db=db, provider=provider, email_notifier=email)
        make_prediction("NVDA")

        app.run_price_check(user.id, now=now)

        email.send_run_summary.assert_not_called()

    def test_run_check_all_users(self, db, app, user, make_prediction):
        """Should run once per user with open predictions."""
        UserRepository(db).create(User(id="idle"))
        make_prediction("AAPL")

        runs = app.run_check()

        assert [r.user_id for r in runs] == [user.id]

    def test_create_prediction(self, db, app):
        """Should store a new prediction and its author."""
        prediction = app.create_prediction(
            Prediction(user_id="new-user", symbol="aapl", target_price=120.0, stop_loss_price=90.0)
        )

        assert prediction.symbol == "AAPL"
        assert UserRepository(db).get_by_id("new-user") is not None

    def test_create_prediction_requires_symbol(self, app, user):
        """Should refuse a prediction without a symbol."""
        with pytest.raises(ValueError):
            app.create_prediction(
                Prediction(user_id=user.id, symbol="", target_price=1.0, stop_loss_price=0.5)
            )


class TestDeadline:
    """Test the run deadline."""

    def test_expires(self):
        """Should raise once the budget is used up."""
        ticks = iter([0.0, 5.0, 11.0])
        deadline = Deadline(10, clock=lambda: next(ticks))

        deadline.check()
        with pytest.raises(PriceCheckTimeout):
            deadline.check()


class TestCLICommands:
    """Test CLI helpers."""

    def test_add_user_and_post(self, tmp_path):
        """Should create a user and a prediction in a file database."""
        db = Database(str(tmp_path / "test.db"))
        db.initialize()

        user = add_user(db, username="trader", email="trader@example.com", whatsapp="0501234567")
        prediction = add_post(db, user.id, "2222", 30.0, 35.0, 28.0, exchange="SR")

        stored = UserRepository(db).get_by_id(user.id)
        assert stored.whatsapp_notifications_enabled is True
        assert prediction.quote_symbol == "2222.SR"
        assert PredictionRepository(db).get_by_id(prediction.id).target_price == 35.0
        db.close()

    def test_export_history(self, db, user, make_prediction, tmp_path, now):
        """Should write the history array to a file."""
        app = FireStocksApp(db=db, provider=StaticProvider({"AAPL": 125.0}))
        make_prediction("AAPL")
        app.run_price_check(user.id, now=now)

        path = export_history(app, user.id, str(tmp_path / "history.json"))

        with open(path, encoding="utf-8") as f:
            exported = json.load(f)
        assert len(exported) == 1
        assert exported[0]["results"][0]["targetReached"] is True
