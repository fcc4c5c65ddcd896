"""
Prediction evaluation engine.
"""

import logging
from datetime import datetime
from typing import Optional

from firestocks.data.fetcher import (
    PricedPrediction,
    STATUS_NO_DATA,
    STATUS_AFTER_MARKET_CLOSE,
)
from firestocks.database.models import Prediction
from firestocks.database.repository import PredictionRepository
from .types import Classification, Direction, Evaluation, Outcome

# Re-export for convenience
__all__ = ["PredictionEvaluator", "Classification", "Outcome", "Evaluation"]

logger = logging.getLogger(__name__)


def infer_direction(prediction: Prediction) -> Direction:
    """
    Work out whether the prediction is a long or a short call.

    The target is compared with the initial price; without an initial
    price the stop-loss is used as the reference instead.
    """
    target = prediction.target_price
    if target is None:
        return Direction.NONE

    reference = prediction.initial_price
    if reference is not None:
        if target > reference:
            return Direction.UP
        if target < reference:
            return Direction.DOWN
        return Direction.NONE

    stop = prediction.stop_loss_price
    if stop is None or stop == target:
        return Direction.NONE
    return Direction.UP if stop < target else Direction.DOWN


def classify(prediction: Prediction, price: float) -> Classification:
    """Decide target / stop-loss / still open for one price. Target wins ties."""
    direction = infer_direction(prediction)
    target = prediction.target_price
    stop = prediction.stop_loss_price

    if direction == Direction.UP:
        if price >= target:
            return Classification.TARGET_REACHED
        if stop is not None and price <= stop:
            return Classification.STOP_LOSS_TRIGGERED
    elif direction == Direction.DOWN:
        if price <= target:
            return Classification.TARGET_REACHED
        if stop is not None and price >= stop:
            return Classification.STOP_LOSS_TRIGGERED

    return Classification.CHECKED_NO_CHANGE


class PredictionEvaluator:
    """Classifies priced predictions and persists the resulting changes."""

    def __init__(self, predictions: Optional[PredictionRepository] = None):
        self.predictions = predictions

    def evaluate(self, priced: PricedPrediction, now: datetime) -> Evaluation:
        """
        Classify one prediction and compute its column changes.

        Args:
            priced: Prediction with its fresh price (or a no-data status)
            now: Evaluation time (aware datetime)

        Returns:
            Evaluation with the outcome and the changes to write
        """
        prediction = priced.prediction
        stored_price = prediction.current_price
        check_time = now
        if prediction.last_price_check and prediction.last_price_check > now:
            check_time = prediction.last_price_check

        def outcome(classification, price, closed=False, price_changed=False):
            return Outcome(
                prediction_id=prediction.id,
                symbol=prediction.symbol,
                company_name=prediction.company_name,
                current_price=price,
                target_price=prediction.target_price,
                stop_loss_price=prediction.stop_loss_price,
                classification=classification,
                closed=closed,
                price_changed=price_changed,
            )

        if priced.status == STATUS_AFTER_MARKET_CLOSE:
            return Evaluation(outcome(Classification.AFTER_MARKET_CLOSE, stored_price))

        if priced.status == STATUS_NO_DATA or priced.current_price is None:
            return Evaluation(
                outcome(Classification.NO_DATA, stored_price),
                {"last_price_check": check_time},
            )

        price = priced.current_price
        classification = classify(prediction, price)
        changes = {
            "current_price": price,
            "last_price": price,
            "last_price_check": check_time,
        }

        if classification == Classification.TARGET_REACHED:
            changes.update(closed=True, target_reached=True, target_reached_date=now)
            return Evaluation(outcome(classification, price, closed=True), changes)

        if classification == Classification.STOP_LOSS_TRIGGERED:
            changes.update(closed=True, stop_loss_triggered=True, stop_loss_triggered_date=now)
            return Evaluation(outcome(classification, price, closed=True), changes)

        price_changed = stored_price is None or price != stored_price
        if not price_changed:
            changes = {"last_price_check": check_time}
        return Evaluation(outcome(classification, price, price_changed=price_changed), changes)

    def evaluate_batch(
        self,
        priced_predictions: list[PricedPrediction],
        now: datetime,
        deadline=None,
        on_outcome=None,
    ) -> list[Outcome]:
        """
        Evaluate and persist predictions one at a time, in order.

        Each write is independent; a failed or lost write is logged and the
        outcome is marked as not persisted.

        Args:
            priced_predictions: Output of PredictionFetcher.fetch
            now: Evaluation time
            deadline: Optional run deadline, checked before each prediction
            on_outcome: Optional callback receiving each outcome as produced

        Returns:
            Outcomes in input order
        """
        outcomes = []

        for priced in priced_predictions:
            if deadline is not None:
                deadline.check()

            try:
                evaluation = self.evaluate(priced, now)
            except Exception as e:
                logger.error(f"Error evaluating prediction {priced.prediction.id}: {e}")
                continue

            if evaluation.changes and self.predictions is not None:
                evaluation.outcome.persisted = self._persist(priced.prediction, evaluation)

            outcomes.append(evaluation.outcome)
            if on_outcome is not None:
                on_outcome(evaluation.outcome)

        return outcomes

    def _persist(self, prediction: Prediction, evaluation: Evaluation) -> bool:
        """Write one evaluation with compare-and-swap on the row version."""
        try:
            written = self.predictions.apply_update(
                prediction.id, prediction.version, evaluation.changes
            )
        except Exception as e:
            logger.error(f"Error updating prediction {prediction.id}: {e}")
            return False

        if not written:
            logger.warning(
                f"Prediction {prediction.id} changed during the run; skipping write"
            )
        return written
