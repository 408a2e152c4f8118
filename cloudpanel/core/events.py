"""Typed in-process notifications.

Components publish ``PanelEvent`` instances on a shared ``EventBus``;
consumers subscribe with a sync or async handler and hold on to the
returned ``Subscription`` so they can detach explicitly.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    vm_status = "vm_status"
    vm_warning = "vm_warning"
    vm_shutting_down = "vm_shutting_down"
    vm_shutdown = "vm_shutdown"
    vm_shutdown_error = "vm_shutdown_error"
    player_count_changed = "player_count_changed"


@dataclass
class PanelEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


EventHandler = Callable[[PanelEvent], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        handler: EventHandler,
        event_types: Optional[frozenset] = None,
    ):
        self._bus = bus
        self.handler = handler
        self.event_types = event_types
        self.active = True

    def accepts(self, event: PanelEvent) -> bool:
        return self.active and (
            self.event_types is None or event.type in self.event_types
        )

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    # Upper bound on one async handler; publishers never wait longer
    DEFAULT_HANDLER_TIMEOUT = 5.0

    def __init__(self, handler_timeout: float = DEFAULT_HANDLER_TIMEOUT):
        self._subscriptions: List[Subscription] = []
        self.handler_timeout = handler_timeout

    def subscribe(
        self, handler: EventHandler, *event_types: EventType
    ) -> Subscription:
        """Register a handler, optionally filtered to some event types"""
        subscription = Subscription(
            self, handler, frozenset(event_types) if event_types else None
        )
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: PanelEvent) -> None:
        """Deliver an event to every matching subscriber in order"""
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                result = subscription.handler(event)
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, self.handler_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    f"Event handler {subscription.handler!r} took longer than "
                    f"{self.handler_timeout}s for {event.type.value}, skipped"
                )
            except Exception as e:
                logger.error(
                    f"Event handler {subscription.handler!r} failed for "
                    f"{event.type.value}: {e}",
                    exc_info=True,
                )

    async def emit(self, event_type: EventType, **data: Any) -> PanelEvent:
        event = PanelEvent(type=event_type, data=data)
        await self.publish(event)
        return event
