"""
EventBus implementation for portfolio snapshot fan-out.

Provides synchronous publish/subscribe. Events are dispatched in priority
order with error isolation and bounded history.

Key Features:
- Synchronous execution (publish() returns after every handler ran)
- Deterministic ordering (priority-based, then subscription order)
- Error isolation (one handler failure doesn't stop others)
- Thread-safe subscription bookkeeping (handlers run outside the lock)
- Memory-bounded history (configurable)
"""

import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    Union,
    overload,
)

from portsync.events.events import BaseEvent
from portsync.system import LoggerFactory

EventT = TypeVar("EventT", bound=BaseEvent)

logger = LoggerFactory.get_logger()


class IEventBus(Protocol):
    """
    Event bus interface for publish/subscribe messaging.

    Usage:
        >>> bus = EventBus()
        >>> bus.subscribe("portfolio_state", render_snapshot, priority=10)
        >>> bus.publish(PortfolioStateEvent(...))  # Handler called synchronously
    """

    def publish(self, event: BaseEvent) -> None:
        """
        Publish event to all subscribers.

        Calls all registered handlers for this event type synchronously
        in priority order. If a handler raises an exception, it is logged
        but other handlers continue to be called.
        """
        ...

    def subscribe(
        self,
        event_type: Union[str, Type[BaseEvent]],
        handler: Callable[[Any], None],
        priority: int = 0,
    ) -> "SubscriptionToken":
        """
        Subscribe to event type.

        Args:
            event_type: Event type string (e.g. 'portfolio_state') or event class
            handler: Callback function to handle event
            priority: Handler priority (higher = called first, default=0)

        Returns:
            SubscriptionToken for unsubscription
        """
        ...

    def unsubscribe(self, event_type: str, handler: Callable[[BaseEvent], None]) -> None:
        """Remove a handler; no-op if it was not subscribed."""
        ...

    def get_history(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[BaseEvent]:
        """Get event history, oldest first, with optional filters."""
        ...

    def clear_history(self) -> None:
        """Clear event history."""
        ...


class SubscriptionToken(ContextManager):
    """
    Token for subscription removal.

    Usable as a context manager, through ``unsubscribe()``, or called
    directly: ``token()`` unsubscribes.
    """

    def __init__(self, bus: "EventBus", event_type: str, handler: Callable):
        self.bus = bus
        self.event_type = event_type
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        if self._active:
            self.bus.unsubscribe(self.event_type, self.handler)
            self._active = False

    def __call__(self):
        self.unsubscribe()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class EventBus:
    """
    Synchronous event bus.

    Features:
    - Synchronous execution: publish() blocks until all handlers complete
    - Deterministic ordering: Handlers called in priority order (highest first)
    - Error isolation: One handler failure doesn't stop others
    - Event history: Recent events kept for inspection
    - Memory bounded: History capped to prevent memory issues

    Thread Safety: subscribe/unsubscribe/publish may be called from any
    thread. Handlers run on the publishing thread, outside the internal
    lock, so a handler may itself subscribe, unsubscribe or publish.

    Example:
        >>> bus = EventBus(max_history=100)
        >>> bus.subscribe("portfolio_state", dashboard.render, priority=100)
        >>> bus.subscribe("portfolio_state", audit.record, priority=50)
        >>> bus.publish(PortfolioStateEvent(...))
        >>> recent = bus.get_history(event_type="portfolio_state", limit=10)
    """

    def __init__(self, max_history: int = 1000):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history (0 = unlimited).
                        When limit reached, oldest events are discarded.
        """
        # {event_type: [(priority, handler), ...]}
        self._subscribers: Dict[str, List[Tuple[int, Callable]]] = defaultdict(list)
        self._handler_cache: Dict[str, List[Tuple[int, Callable]]] = {}
        self._event_history: deque[BaseEvent] = deque(maxlen=max_history if max_history > 0 else None)
        self._max_history = max_history
        self._lock = threading.RLock()
        logger.debug("event_bus.initialized", max_history=max_history)

    def publish(self, event: BaseEvent) -> None:
        """
        Publish event to all subscribers.

        Processing order:
        1. Add event to history
        2. Call each handler synchronously, highest priority first
        3. If a handler raises, log it and continue

        Args:
            event: Event to publish
        """
        start = time.perf_counter()

        with self._lock:
            self._event_history.append(event)
            sorted_handlers = self._handler_cache.get(event.event_type)
            if sorted_handlers is None:
                handlers = self._subscribers.get(event.event_type, [])
                # sorted() is stable: equal priorities keep subscription order
                sorted_handlers = sorted(handlers, key=lambda x: x[0], reverse=True)
                self._handler_cache[event.event_type] = sorted_handlers

        errors = []
        for priority, handler in sorted_handlers:
            try:
                handler(event)
            except Exception as e:
                errors.append((handler, e))
                logger.error(
                    "event_bus.handler_error",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    handler=getattr(handler, "__name__", str(handler)),
                    error=str(e),
                )
        duration = time.perf_counter() - start
        logger.debug(
            "event_bus.published",
            event_type=event.event_type,
            event_id=event.event_id,
            subscriber_count=len(sorted_handlers),
            duration=duration,
            errors=len(errors),
        )

    @overload
    def subscribe(
        self, event_type: str, handler: Callable[[BaseEvent], None], priority: int = 0
    ) -> SubscriptionToken: ...
    @overload
    def subscribe(
        self, event_type: Type[EventT], handler: Callable[[EventT], None], priority: int = 0
    ) -> SubscriptionToken: ...

    def subscribe(
        self, event_type: Union[str, Type[BaseEvent]], handler: Callable[[Any], None], priority: int = 0
    ) -> SubscriptionToken:
        """
        Subscribe to event type (by string or class).
        Returns a SubscriptionToken for unsubscription.
        """
        if isinstance(event_type, str):
            event_type_str: str = event_type
        else:
            field = event_type.model_fields.get("event_type")
            event_type_str = field.default if field is not None else None  # type: ignore[assignment]
            if not isinstance(event_type_str, str):
                raise ValueError(f"Event class {event_type} missing event_type")
        with self._lock:
            self._subscribers[event_type_str].append((priority, handler))
            self._handler_cache.pop(event_type_str, None)
            total = len(self._subscribers[event_type_str])
        logger.debug(
            "event_bus.subscribed",
            event_type=event_type_str,
            handler=getattr(handler, "__name__", str(handler)),
            priority=priority,
            total_handlers=total,
        )
        return SubscriptionToken(self, event_type_str, handler)

    def unsubscribe(self, event_type: str, handler: Callable[[BaseEvent], None]) -> None:
        """
        Unsubscribe from event type.

        Removes handler from subscriber list. If handler was not subscribed,
        this is a no-op (idempotent).
        """
        with self._lock:
            if event_type not in self._subscribers:
                return
            original_count = len(self._subscribers[event_type])
            self._subscribers[event_type] = [(p, h) for p, h in self._subscribers[event_type] if h != handler]
            removed_count = original_count - len(self._subscribers[event_type])
            self._handler_cache.pop(event_type, None)
        if removed_count > 0:
            logger.debug(
                "event_bus.unsubscribed",
                event_type=event_type,
                handler=getattr(handler, "__name__", str(handler)),
                removed_count=removed_count,
            )

    def get_history(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[BaseEvent]:
        """
        Get event history with optional filters.

        Filters are applied in order: event type, timestamp, limit.

        Returns:
            List of events in chronological order
        """
        with self._lock:
            events = list(self._event_history)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if since is not None:
            events = [e for e in events if e.occurred_at >= since]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        """Clear event history. Does not affect subscriptions."""
        with self._lock:
            self._event_history.clear()
        logger.debug("event_bus.history_cleared")
