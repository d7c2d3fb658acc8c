import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tagshop.errors import DuplicateEvent, MalformedMetadata, OrderNotFound
from tagshop.events import Event
from tagshop.models import OrderStatus
from tagshop.reconciler import AppliedOrder, OrderReconciler
from tagshop.state_machine import TRANSITIONS, decide, resolve_lookup

logger = logging.getLogger(__name__)

IGNORED = "ignored"
SKIPPED = "skipped"
NOT_FOUND = "not_found"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class HandlerResult:
    event_id: str
    event_type: str
    outcome: str
    order: Optional[AppliedOrder] = None
    notify: bool = False


class EventRouter:
    """Maps event type tags to handlers. Unknown tags are acknowledged untouched."""

    def __init__(self, reconciler: OrderReconciler):
        self._reconciler = reconciler
        self._handlers: Dict[str, Callable[[Event, bool], HandlerResult]] = {
            event_type: self._reconcile for event_type in TRANSITIONS
        }

    def route(self, event: Event, record: bool = True) -> HandlerResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type=%s id=%s", event.type, event.id)
            return HandlerResult(event.id, event.type, IGNORED)
        return handler(event, record)

    def _reconcile(self, event: Event, record: bool = True) -> HandlerResult:
        decision = decide(event)
        if decision is None or decision.is_noop:
            return HandlerResult(event.id, event.type, SKIPPED)

        try:
            lookup = resolve_lookup(event)
        except MalformedMetadata as exc:
            logger.warning("Skipping %s id=%s: %s (metadata=%s)", event.type, event.id, exc, event.metadata)
            return HandlerResult(event.id, event.type, SKIPPED)

        try:
            order = self._reconciler.apply(lookup, decision, event.id if record else None)
        except OrderNotFound:
            return HandlerResult(event.id, event.type, NOT_FOUND)
        except DuplicateEvent:
            logger.info("Duplicate delivery of %s id=%s acknowledged", event.type, event.id)
            return HandlerResult(event.id, event.type, DUPLICATE)

        notify = decision.notify and order.changed and order.status is OrderStatus.PAID
        return HandlerResult(event.id, event.type, order.outcome, order, notify)
