"""Refresh throttling for the price and exchange-rate feeds."""

from portsync.services.refresh.throttle import QueuedRefresh, RefreshThrottle, RefreshThrottleConfig

__all__ = [
    "QueuedRefresh",
    "RefreshThrottle",
    "RefreshThrottleConfig",
]
