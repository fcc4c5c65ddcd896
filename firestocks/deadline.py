"""
Run deadline shared by the fetch and evaluate stages.
"""

import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any


class PriceCheckTimeout(Exception):
    """Raised when a price-check run exceeds its deadline."""

    pass


class Deadline:
    """Wall-clock budget for one run."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(self.expires_at - self.clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self) -> None:
        """
        Raises:
            PriceCheckTimeout: If the budget is used up
        """
        if self.expired:
            raise PriceCheckTimeout("Price check timed out")

    def wait(self, future: Future) -> Any:
        """
        Wait for a background call, giving up when the budget runs out.

        The call itself keeps running on its worker thread; its result is
        discarded.

        Raises:
            PriceCheckTimeout: If the budget runs out first
        """
        try:
            return future.result(timeout=self.remaining())
        except FutureTimeoutError:
            future.cancel()
            raise PriceCheckTimeout("Price check timed out") from None
