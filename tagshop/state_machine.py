import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional

from tagshop.errors import MalformedMetadata
from tagshop.events import ChargeEvent, CheckoutSessionEvent, Event, PaymentIntentEvent
from tagshop.models import OrderStatus

logger = logging.getLogger(__name__)

RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.PAID: 2,
    OrderStatus.FAILED: 2,
}
TERMINAL = frozenset({OrderStatus.PAID, OrderStatus.FAILED})

# orders.id is a 32-bit integer column
MAX_ORDER_ID = 2**31 - 1


@dataclass(frozen=True)
class OrderLookup:
    order_id: Optional[int] = None
    payment_reference: Optional[str] = None

    def __str__(self):
        if self.order_id is not None:
            return f"order_id={self.order_id}"
        return f"payment_reference={self.payment_reference}"


@dataclass(frozen=True)
class Decision:
    event_type: str
    target_status: Optional[OrderStatus] = None  # None leaves status alone
    payment_reference: Optional[str] = None      # None leaves the reference alone
    reference_if_unset: bool = False
    notify: bool = False

    @property
    def allowed_from(self) -> FrozenSet[OrderStatus]:
        """Current statuses this decision may be written over."""
        if self.target_status is None:
            return frozenset(OrderStatus)
        return frozenset(s for s in OrderStatus if can_transition(s, self.target_status))

    @property
    def recovers_from(self) -> FrozenSet[OrderStatus]:
        """Terminal statuses this decision may still overwrite."""
        return frozenset(s for s in TERMINAL if is_recovery(s, self.target_status))

    @property
    def is_noop(self) -> bool:
        return self.target_status is None and self.payment_reference is None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if is_recovery(current, target):
        return True
    if current in TERMINAL:
        return False
    if current == target:
        return True
    return RANK[current] < RANK[target]


def is_recovery(current: OrderStatus, target: Optional[OrderStatus]) -> bool:
    # a declined attempt can be followed by a successful retry on the same PaymentIntent
    return current is OrderStatus.FAILED and target is OrderStatus.PAID


def is_downgrade(current: OrderStatus, target: Optional[OrderStatus]) -> bool:
    """True when applying ``target`` would move ``current`` backwards or out of a terminal state."""
    if target is None or current == target:
        return False
    return not can_transition(current, target)


def charge_status_to_order(charge_status: Optional[str]) -> OrderStatus:
    if charge_status == "succeeded":
        return OrderStatus.PAID
    if charge_status in ("failed", "canceled"):
        return OrderStatus.FAILED
    return OrderStatus.PROCESSING


def _on_created(event: PaymentIntentEvent) -> Decision:
    return Decision(event.type, payment_reference=event.intent_id, reference_if_unset=True)


def _on_processing(event: PaymentIntentEvent) -> Decision:
    return Decision(event.type, OrderStatus.PROCESSING, event.intent_id)


def _on_succeeded(event: PaymentIntentEvent) -> Decision:
    return Decision(event.type, OrderStatus.PAID, event.intent_id, notify=True)


def _on_payment_failed(event: PaymentIntentEvent) -> Decision:
    return Decision(event.type, OrderStatus.FAILED, event.intent_id)


def _on_canceled(event: PaymentIntentEvent) -> None:
    logger.info("Payment canceled payment_intent=%s metadata=%s", event.intent_id, event.metadata)
    return None


def _on_checkout_completed(event: CheckoutSessionEvent) -> Decision:
    status = OrderStatus.PAID if event.payment_status == "paid" else OrderStatus.PROCESSING
    return Decision(
        event.type,
        status,
        event.payment_intent,
        notify=status is OrderStatus.PAID,
    )


def _on_charge_updated(event: ChargeEvent) -> Decision:
    return Decision(event.type, charge_status_to_order(event.status))


TRANSITIONS: Dict[str, Callable[..., Optional[Decision]]] = {
    "payment_intent.created": _on_created,
    "payment_intent.processing": _on_processing,
    "payment_intent.requires_action": _on_processing,
    "payment_intent.succeeded": _on_succeeded,
    "payment_intent.payment_failed": _on_payment_failed,
    "payment_intent.canceled": _on_canceled,
    "checkout.session.completed": _on_checkout_completed,
    "charge.updated": _on_charge_updated,
}


def decide(event: Event) -> Optional[Decision]:
    transition = TRANSITIONS.get(event.type)
    if transition is None:
        return None
    return transition(event)


def order_id_from_metadata(metadata: Dict[str, str]) -> int:
    raw = metadata.get("orderid")
    if raw is None or not str(raw).strip():
        raise MalformedMetadata("No orderid in metadata")
    try:
        order_id = int(str(raw).strip())
    except ValueError as exc:
        raise MalformedMetadata(f"Non-numeric orderid {raw!r} in metadata") from exc
    if not 1 <= order_id <= MAX_ORDER_ID:
        raise MalformedMetadata(f"orderid {raw!r} is out of range")
    return order_id


def resolve_lookup(event: Event) -> OrderLookup:
    """Work out which order an event refers to.

    ``charge.updated`` falls back to the stored payment reference when the
    charge metadata has no usable orderid.
    """
    try:
        return OrderLookup(order_id=order_id_from_metadata(event.metadata))
    except MalformedMetadata:
        if isinstance(event, ChargeEvent) and event.payment_intent:
            return OrderLookup(payment_reference=event.payment_intent)
        raise
