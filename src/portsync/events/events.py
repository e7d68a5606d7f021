"""
Events published by the portfolio engine.

Design Principles:
- Frozen envelope shared by every event
- UTC timezone-aware timestamps (RFC3339 with Z)
- Payloads carry immutable snapshots, never live state
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator

from portsync.services.portfolio.models import PortfolioState


class BaseEvent(BaseModel):
    """Base for all events - provides envelope fields only."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str = "base"
    event_version: int = Field(default=1, description="Payload major version")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="UTC timestamp RFC3339"
    )
    correlation_id: Optional[str] = None
    source_service: str = "unknown"

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("occurred_at", mode="before")
    @classmethod
    def ensure_utc(cls, v: Any) -> datetime:
        """Ensure timestamp is UTC timezone-aware."""
        if isinstance(v, str):
            dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        elif isinstance(v, datetime):
            dt = v
        else:
            raise ValueError(f"Cannot parse datetime from {type(v)}: {v}")

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        elif dt.tzinfo != timezone.utc:
            dt = dt.astimezone(timezone.utc)

        return dt

    @field_serializer("occurred_at")
    def _serialize_occurred_at(self, v: datetime) -> str:
        return v.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class PortfolioStateEvent(BaseEvent):
    """
    Portfolio snapshot event.

    Published by PortfolioStateManager after every mutation that changed
    state. Subscribers receive a frozen copy of the PortfolioState, so they
    cannot alter what the manager holds.

    Attributes:
        portfolio_id: Identifier of the publishing manager
        version: State version (monotonic per manager)
        reason: Operation that produced the snapshot
            (initialize, transactions, prices, exchange_rate, rebuild, reset)
        state: The snapshot
    """

    event_type: str = "portfolio_state"
    source_service: str = "portfolio_state_manager"
    portfolio_id: str
    version: int
    reason: str
    state: PortfolioState
