"""Shared fixtures for portfolio tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count

import pytest

from portsync.services.portfolio.models import AssetType, Transaction, TransactionType

BASE_TIME = datetime(2024, 1, 2, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_time() -> datetime:
    """Standard timestamp for tests."""
    return BASE_TIME


@pytest.fixture
def make_tx():
    """
    Transaction factory.

    Each call gets a fresh id and, unless ``day`` is given, a timestamp one
    day after the previous call.
    """
    ids = count(1)

    def _make(
        type: str = "buy",
        symbol: str = "BBCA",
        amount: str | int = 100,
        price: str | int = 5000,
        asset_type: str = "stock",
        day: int | None = None,
        **extra,
    ) -> Transaction:
        n = next(ids)
        offset = n if day is None else day
        return Transaction(
            id=extra.pop("id", f"tx_{n:03d}"),
            type=TransactionType(type),
            asset_type=AssetType(asset_type),
            symbol=symbol,
            amount=Decimal(str(amount)),
            price=Decimal(str(price)),
            timestamp=BASE_TIME + timedelta(days=offset),
            **extra,
        )

    return _make
