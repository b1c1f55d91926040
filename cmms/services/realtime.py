"""
In-process realtime event bus.

Blueprint-independent publish/subscribe used to push permit and
work-order updates to live clients (a websocket gateway subscribes at
startup). Publishing is fire-and-forget: a failing subscriber is logged
and the remaining subscribers still run.

    bus.subscribe("work_order.updated", handler)
    bus.publish("work_order.updated", work_order.to_dict())
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from cmms.utils.helpers import utc_now

logger = logging.getLogger(__name__)

PERMIT_CREATED = "permit.created"
PERMIT_UPDATED = "permit.updated"
PERMIT_ESCALATED = "permit.escalated"
WORK_ORDER_UPDATED = "work_order.updated"


@dataclass
class RealtimeEvent:
    event_type: str
    payload: dict[str, Any]
    tenant_id: int | None = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class RealtimeBus:
    """Dispatches events to handlers registered per event type ("*" = all)."""

    def __init__(self):
        self.handlers: dict[str, list[Callable[[RealtimeEvent], None]]] = {}

    def subscribe(self, event_type: str, handler: Callable[[RealtimeEvent], None]):
        self.handlers.setdefault(event_type, []).append(handler)
        return handler

    def unsubscribe(self, event_type: str, handler):
        if handler in self.handlers.get(event_type, []):
            self.handlers[event_type].remove(handler)

    def clear(self):
        self.handlers.clear()

    def publish(self, event_type: str, payload: dict, *, tenant_id=None) -> int:
        """Deliver to every matching handler. Returns the number that succeeded."""
        event = RealtimeEvent(event_type=event_type, payload=payload, tenant_id=tenant_id)
        delivered = 0
        for handler in [*self.handlers.get(event_type, []), *self.handlers.get("*", [])]:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Realtime handler %s failed for %s",
                    getattr(handler, "__name__", handler.__class__.__name__), event_type,
                    extra={"tenant_id": tenant_id, "event_type": event_type},
                )
        return delivered


bus = RealtimeBus()


def publish(event_type: str, payload: dict, *, tenant_id=None) -> int:
    """Publish on the process-wide bus without ever raising."""
    try:
        return bus.publish(event_type, payload, tenant_id=tenant_id)
    except Exception:
        logger.exception("Realtime publish failed for %s", event_type,
                         extra={"tenant_id": tenant_id, "event_type": event_type})
        return 0
