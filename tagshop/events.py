from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from tagshop.errors import MalformedEvent

PAYMENT_INTENT_TYPES = frozenset(
    {
        "payment_intent.created",
        "payment_intent.processing",
        "payment_intent.requires_action",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    }
)
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHARGE_UPDATED = "charge.updated"


@dataclass(frozen=True)
class PaymentIntentEvent:
    id: str
    type: str
    intent_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    object: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CheckoutSessionEvent:
    id: str
    type: str
    session_id: str
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    object: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ChargeEvent:
    id: str
    type: str
    charge_id: str
    payment_intent: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    object: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class UnrecognizedEvent:
    id: str
    type: str
    metadata: Dict[str, str] = field(default_factory=dict)
    object: Dict[str, Any] = field(default_factory=dict, repr=False)


Event = Union[PaymentIntentEvent, CheckoutSessionEvent, ChargeEvent, UnrecognizedEvent]


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        return {}
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _reference(value: Any) -> Optional[str]:
    # payment_intent may arrive expanded into a full object
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def parse_event(payload: Any) -> Event:
    """Build a typed event from a decoded Stripe event body."""
    if not isinstance(payload, dict):
        raise MalformedEvent("Event body must be a JSON object")

    event_type = payload.get("type")
    event_id = payload.get("id") or ""
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Event has no type")

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"Event {event_id or '?'} has no data.object")

    metadata = _metadata(obj)
    object_id = obj.get("id") or ""

    if event_type in PAYMENT_INTENT_TYPES:
        return PaymentIntentEvent(
            id=event_id,
            type=event_type,
            intent_id=object_id,
            amount=obj.get("amount"),
            currency=obj.get("currency"),
            status=obj.get("status"),
            metadata=metadata,
            object=obj,
        )
    if event_type == CHECKOUT_SESSION_COMPLETED:
        return CheckoutSessionEvent(
            id=event_id,
            type=event_type,
            session_id=object_id,
            payment_intent=_reference(obj.get("payment_intent")),
            payment_status=obj.get("payment_status"),
            metadata=metadata,
            object=obj,
        )
    if event_type == CHARGE_UPDATED:
        return ChargeEvent(
            id=event_id,
            type=event_type,
            charge_id=object_id,
            payment_intent=_reference(obj.get("payment_intent")),
            status=obj.get("status"),
            metadata=metadata,
            object=obj,
        )
    return UnrecognizedEvent(id=event_id, type=event_type, metadata=metadata, object=obj)
