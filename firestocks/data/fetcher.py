"""
Quote providers and the open-prediction fetcher.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import pandas as pd
import requests
import yfinance as yf

from firestocks.deadline import PriceCheckTimeout
from firestocks.database.models import Prediction
from firestocks.database.repository import PredictionRepository
from .market import MarketCalendar

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_DATA = "no_data"
STATUS_AFTER_MARKET_CLOSE = "after_market_close"


class QuoteUnavailableError(ValueError):
    """Raised when a provider cannot return a price for a symbol."""

    pass


@dataclass
class Quote:
    """Latest price for one symbol."""

    symbol: str
    price: float
    timestamp: datetime


@dataclass
class PricedPrediction:
    """An open prediction paired with its fresh price, if one was found."""

    prediction: Prediction
    current_price: Optional[float]
    status: str = STATUS_OK
    error: Optional[str] = None


class QuoteProvider(ABC):
    """Source of current market prices."""

    name = "base"

    @abstractmethod
    def get_quote(self, symbol: str, timeout: Optional[float] = None) -> Quote:
        """
        Fetch the latest price.

        Args:
            symbol: Exchange-qualified symbol (e.g. "AAPL", "2222.SR")
            timeout: Upper bound in seconds for network calls, when supported

        Raises:
            QuoteUnavailableError: If no price is available
        """
        pass


def _usable_price(value) -> bool:
    return value is not None and not pd.isna(value) and value > 0


class YahooQuoteProvider(QuoteProvider):
    """Fetches quotes from Yahoo Finance."""

    name = "yahoo_finance"

    def __init__(self, request_timeout: float = 10.0):
        self.request_timeout = request_timeout

    def get_quote(self, symbol: str, timeout: Optional[float] = None) -> Quote:
        if timeout is None:
            timeout = self.request_timeout
        else:
            timeout = min(timeout, self.request_timeout)

        stock = yf.Ticker(symbol)
        fast = stock.fast_info

        # Use the last traded price if available, otherwise fall back to previous close
        current_price = fast.last_price
        if not _usable_price(current_price):
            current_price = fast.previous_close

        # Some exchanges only report through the price history
        if not _usable_price(current_price):
            hist = stock.history(period="5d", timeout=timeout)
            if hist.empty:
                raise QuoteUnavailableError(f"Invalid symbol or no data available: {symbol}")
            current_price = hist["Close"].iloc[-1]

        return Quote(
            symbol=symbol,
            price=float(current_price),
            timestamp=datetime.now(timezone.utc),
        )


class EodhdQuoteProvider(QuoteProvider):
    """Fetches quotes from the EOD Historical Data real-time endpoint."""

    name = "eodhd"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://eodhd.com/api",
        request_timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout

    def get_quote(self, symbol: str, timeout: Optional[float] = None) -> Quote:
        if timeout is None:
            timeout = self.request_timeout
        else:
            timeout = min(timeout, self.request_timeout)

        try:
            response = requests.get(
                f"{self.base_url}/real-time/{symbol}",
                params={"api_token": self.api_key, "fmt": "json"},
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise QuoteUnavailableError(f"Quote request failed for {symbol}: {e}") from e
        except ValueError as e:
            raise QuoteUnavailableError(f"Malformed quote response for {symbol}") from e

        # The endpoint reports "NA" for symbols without a trade
        price = data.get("close") if isinstance(data, dict) else None
        if price in (None, "NA"):
            price = data.get("previousClose") if isinstance(data, dict) else None
        if price in (None, "NA"):
            raise QuoteUnavailableError(f"Invalid symbol or no data available: {symbol}")

        return Quote(
            symbol=symbol,
            price=float(price),
            timestamp=datetime.now(timezone.utc),
        )


def create_quote_provider(
    provider: str,
    api_key: str = "",
    base_url: str = "https://eodhd.com/api",
    request_timeout: float = 10.0,
) -> QuoteProvider:
    """
    Create a quote provider by name.

    Raises:
        ValueError: If provider is unknown
    """
    if provider == "yahoo_finance":
        return YahooQuoteProvider(request_timeout=request_timeout)
    elif provider == "eodhd":
        return EodhdQuoteProvider(
            api_key=api_key, base_url=base_url, request_timeout=request_timeout
        )
    else:
        raise ValueError(f"Unknown quote provider: {provider}")


class PredictionFetcher:
    """Collects a user's open predictions with their current prices."""

    def __init__(
        self,
        predictions: PredictionRepository,
        provider: QuoteProvider,
        calendar: Optional[MarketCalendar] = None,
        market_hours_only: bool = False,
    ):
        self.predictions = predictions
        self.provider = provider
        self.calendar = calendar or MarketCalendar()
        self.market_hours_only = market_hours_only

    def fetch(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        deadline=None,
    ) -> list[PricedPrediction]:
        """
        Fetch open predictions and their prices.

        A provider failure only affects that symbol: its predictions come
        back with status "no_data" and no price.

        Args:
            user_id: Owner of the predictions
            now: Evaluation time, defaults to the current UTC time
            deadline: Optional run deadline; checked before every quote and
                bounding how long each quote call is awaited

        Returns:
            One PricedPrediction per open prediction, oldest first

        Raises:
            ValueError: If user_id is empty
            PriceCheckTimeout: If the deadline passes, including mid-quote
        """
        if not user_id:
            raise ValueError("user_id is required")

        now = now or datetime.now(timezone.utc)
        open_predictions = self.predictions.list_open(user_id)
        if not open_predictions:
            logger.info(f"No open predictions for user {user_id}")
            return []

        quotes: dict[str, Quote] = {}
        failures: dict[str, str] = {}
        results = []

        # Quotes run on a worker so the deadline can abandon a stuck call
        executor = None
        if deadline is not None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="quote")
        try:
            for prediction in open_predictions:
                results.append(
                    self._price(prediction, now, quotes, failures, deadline, executor)
                )
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)

        return results

    def _price(
        self,
        prediction: Prediction,
        now: datetime,
        quotes: dict[str, Quote],
        failures: dict[str, str],
        deadline,
        executor: Optional[ThreadPoolExecutor],
    ) -> PricedPrediction:
        if self.market_hours_only and self.calendar.is_stale_after_close(
            prediction.last_price_check, now
        ):
            return PricedPrediction(prediction, None, status=STATUS_AFTER_MARKET_CLOSE)

        symbol = prediction.quote_symbol
        if symbol not in quotes and symbol not in failures:
            if deadline is not None:
                deadline.check()
            try:
                if deadline is None:
                    quotes[symbol] = self.provider.get_quote(symbol)
                else:
                    future = executor.submit(
                        self.provider.get_quote, symbol, timeout=deadline.remaining()
                    )
                    quotes[symbol] = deadline.wait(future)
            except PriceCheckTimeout:
                logger.warning(f"Quote for {symbol} abandoned at the run deadline")
                raise
            except Exception as e:
                logger.warning(f"No quote for {symbol}: {e}")
                failures[symbol] = str(e)

        if symbol in quotes:
            return PricedPrediction(prediction, quotes[symbol].price)
        return PricedPrediction(
            prediction, None, status=STATUS_NO_DATA, error=failures[symbol]
        )
