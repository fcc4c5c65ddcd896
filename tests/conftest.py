"""
Pytest configuration and shared fixtures.
"""

import pytest
from unittest.mock import Mock
from datetime import datetime, timezone

from firestocks.database.connection import Database
from firestocks.database.models import Prediction, User
from firestocks.database.repository import PredictionRepository, UserRepository


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def user(db):
    """A trader with an email address."""
    return UserRepository(db).create(
        User(id="user-1", username="trader", full_name="Test Trader", email="trader@example.com")
    )


@pytest.fixture
def make_prediction(db, user):
    """Factory storing a prediction for the default user."""
    repo = PredictionRepository(db)

    def _make(symbol="AAPL", initial=100.0, target=120.0, stop=90.0, **kwargs):
        kwargs.setdefault("user_id", user.id)
        return repo.create(
            Prediction(
                symbol=symbol,
                initial_price=initial,
                target_price=target,
                stop_loss_price=stop,
                company_name=kwargs.pop("company_name", f"{symbol} Corp"),
                **kwargs,
            )
        )

    return _make


@pytest.fixture
def now():
    """A fixed evaluation time (a Wednesday, during US market hours)."""
    return datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_fast_info():
    """Sample Yahoo Finance fast_info for a liquid symbol."""
    return Mock(last_price=175.50, previous_close=173.25, currency="USD", exchange="NMS")


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@firestocks.app",
    }
