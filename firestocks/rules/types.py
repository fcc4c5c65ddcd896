"""
Outcome types produced by the prediction evaluator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Classification(str, Enum):
    """Result of evaluating one prediction in a run."""

    TARGET_REACHED = "target_reached"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    CHECKED_NO_CHANGE = "checked_no_change"
    NO_DATA = "no_data"
    AFTER_MARKET_CLOSE = "after_market_close"

    @property
    def is_terminal(self) -> bool:
        return self in (Classification.TARGET_REACHED, Classification.STOP_LOSS_TRIGGERED)


class Direction(str, Enum):
    """Which way the prediction expects the price to move."""

    UP = "up"
    DOWN = "down"
    NONE = "none"


@dataclass
class Outcome:
    """Per-prediction result of one price-check run."""

    prediction_id: str
    symbol: str
    company_name: str
    current_price: Optional[float]
    target_price: Optional[float]
    stop_loss_price: Optional[float]
    classification: Classification
    closed: bool
    price_changed: bool = False
    persisted: bool = True

    @property
    def target_reached(self) -> bool:
        return self.classification == Classification.TARGET_REACHED

    @property
    def stop_loss_triggered(self) -> bool:
        return self.classification == Classification.STOP_LOSS_TRIGGERED

    @property
    def counts_as_update(self) -> bool:
        """Terminal transitions and price changes that reached the database."""
        return self.persisted and (self.classification.is_terminal or self.price_changed)

    def percent_to_target(self) -> Optional[float]:
        """Distance left to the target, or how far past it the price is."""
        if not self.current_price or not self.target_price:
            return None
        price, target = self.current_price, self.target_price
        if not self.target_reached and target > price:
            return round((target - price) / price * 100, 2)
        return round((price - target) / target * 100, 2)

    def percent_to_stop_loss(self) -> Optional[float]:
        if not self.current_price or self.stop_loss_price is None:
            return None
        price, stop = self.current_price, self.stop_loss_price
        if not self.stop_loss_triggered and stop < price:
            return round((price - stop) / price * 100, 2)
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.prediction_id,
            "symbol": self.symbol,
            "companyName": self.company_name,
            "currentPrice": self.current_price,
            "targetPrice": self.target_price,
            "stopLossPrice": self.stop_loss_price,
            "classification": self.classification.value,
            "targetReached": self.target_reached,
            "stopLossTriggered": self.stop_loss_triggered,
            "closed": self.closed,
            "percentToTarget": self.percent_to_target(),
            "percentToStopLoss": self.percent_to_stop_loss(),
        }


@dataclass
class Evaluation:
    """An outcome plus the column changes to persist for it."""

    outcome: Outcome
    changes: dict[str, Any] = field(default_factory=dict)
