"""Event system: envelope models and the synchronous event bus."""

from portsync.events.event_bus import EventBus, IEventBus, SubscriptionToken
from portsync.events.events import BaseEvent, PortfolioStateEvent

__all__ = [
    "BaseEvent",
    "PortfolioStateEvent",
    "EventBus",
    "IEventBus",
    "SubscriptionToken",
]
