import logging
from typing import Dict, List, Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Request
from pydantic import BaseModel, Field

from tagshop.auth import verify_token
from tagshop.errors import StoreUnavailable
from tagshop.events import PaymentIntentEvent
from tagshop.models import Order
from tagshop.state_machine import MAX_ORDER_ID

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentRequest(BaseModel):
    amount: int
    currency: str = "usd"
    contact_id: Optional[int] = None
    order_id: Optional[int] = Field(None, ge=1, le=MAX_ORDER_ID)


class ConfirmRequest(BaseModel):
    payment_intent_id: str
    payment_method: str


class CheckoutRequest(BaseModel):
    success_url: str
    cancel_url: str
    amount: Optional[int] = None
    currency: str = "usd"
    contact_id: Optional[int] = None
    order_id: Optional[int] = Field(None, ge=1, le=MAX_ORDER_ID)
    line_items: Optional[List[dict]] = None


def _metadata(contact_id: Optional[int], order_id: Optional[int]) -> Dict[str, str]:
    return {
        "contactid": str(contact_id) if contact_id is not None else "",
        "orderid": str(order_id) if order_id is not None else "",
    }


def _stripe_failure(exc: stripe.StripeError, action: str) -> HTTPException:
    logger.error("Stripe error during %s: %s (code=%s)", action, exc.user_message or str(exc), exc.code)
    return HTTPException(
        status_code=exc.http_status or 502,
        detail={"error": exc.user_message or str(exc), "code": exc.code or "unknown_error"},
    )


@router.get("/stripeConfig")
def stripe_config(request: Request):
    key = request.app.state.settings.stripe_publishable_key
    if not key:
        logger.error("STRIPE_PUBLISHABLE_KEY is not configured")
        raise HTTPException(status_code=500, detail="Stripe publishable key not configured")
    return {"publishable_key": key, "key_type": "test" if key.startswith("pk_test_") else "live"}


@router.post("/payments")
def create_payment_api(request: PaymentRequest, http_request: Request):
    if request.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be a positive number in cents")

    client = http_request.app.state.payments
    store = http_request.app.state.store

    if request.order_id is not None:
        db = store.session_factory()
        try:
            existing = db.get(Order, request.order_id)
        finally:
            db.close()
        # An order that already has an intent reuses it instead of charging twice
        if existing is not None and existing.payment_reference:
            try:
                intent = client.retrieve_payment_intent(existing.payment_reference)
            except stripe.StripeError as exc:
                raise _stripe_failure(exc, "retrieve existing payment intent")
            return {
                "payment_intent_id": intent.id,
                "client_secret": intent.client_secret,
                "status": intent.status,
            }

    try:
        intent = client.create_payment_intent(
            request.amount, request.currency, _metadata(request.contact_id, request.order_id)
        )
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "create payment intent")

    logger.info("Payment intent created id=%s order_id=%s amount=%s", intent.id, request.order_id, request.amount)
    return {
        "payment_intent_id": intent.id,
        "client_secret": intent.client_secret,
        "status": intent.status,
    }


@router.get("/payments/{payment_intent_id}")
def get_payment(payment_intent_id: str, request: Request):
    if not payment_intent_id.startswith("pi_"):
        raise HTTPException(status_code=400, detail='Payment intent ID must start with "pi_"')
    try:
        intent = request.app.state.payments.retrieve_payment_intent(payment_intent_id)
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "retrieve payment intent")
    return {
        "payment_intent_id": intent.id,
        "amount": intent.amount,
        "currency": intent.currency,
        "status": intent.status,
        "metadata": dict(intent.metadata or {}),
    }


@router.post("/payments/confirm")
def confirm_payment(request: ConfirmRequest, http_request: Request):
    try:
        intent = http_request.app.state.payments.confirm_payment_intent(
            request.payment_intent_id, request.payment_method
        )
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "confirm payment intent")
    return {"payment_intent_id": intent.id, "status": intent.status}


@router.post("/checkout")
def create_checkout(request: CheckoutRequest, http_request: Request):
    if not request.line_items and (request.amount is None or request.amount <= 0):
        raise HTTPException(status_code=400, detail="amount must be a positive number in cents, or provide line_items")
    try:
        session = http_request.app.state.payments.create_checkout_session(
            request.amount,
            request.currency,
            _metadata(request.contact_id, request.order_id),
            request.success_url,
            request.cancel_url,
            request.line_items,
        )
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "create checkout session")
    logger.info("Checkout session created id=%s order_id=%s", session.id, request.order_id)
    return {"session_id": session.id, "url": session.url}


@router.get("/checkout/{session_id}")
def get_checkout(session_id: str, request: Request):
    if not session_id.startswith("cs_"):
        raise HTTPException(status_code=400, detail='Checkout session ID must start with "cs_"')
    try:
        session = request.app.state.payments.retrieve_checkout_session(session_id)
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "retrieve checkout session")
    return {
        "session_id": session.id,
        "status": session.status,
        "payment_status": session.payment_status,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "payment_intent_id": session.payment_intent,
    }


def intent_event_type(intent) -> str:
    """Which webhook a PaymentIntent in its current state would have produced last."""
    status = intent.status
    if status == "succeeded":
        return "payment_intent.succeeded"
    if status in ("processing", "requires_capture"):
        return "payment_intent.processing"
    if status == "requires_action":
        return "payment_intent.requires_action"
    if status == "canceled":
        return "payment_intent.canceled"
    if status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
        return "payment_intent.payment_failed"
    return "payment_intent.created"


@router.post("/orders/{order_id}/reconcile")
def reconcile_order(
    request: Request,
    background_tasks: BackgroundTasks,
    order_id: int = Path(..., ge=1, le=MAX_ORDER_ID),
    claims=Depends(verify_token),
):
    """Re-read an order's PaymentIntent from Stripe and apply it like a webhook would."""
    state = request.app.state

    db = state.store.session_factory()
    try:
        order = db.get(Order, order_id)
    finally:
        db.close()
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if not order.payment_reference:
        raise HTTPException(status_code=409, detail="Order has no payment reference yet")

    try:
        intent = state.payments.retrieve_payment_intent(order.payment_reference)
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "retrieve payment intent")

    event = PaymentIntentEvent(
        id=f"reconcile:{order_id}",
        type=intent_event_type(intent),
        intent_id=intent.id,
        amount=getattr(intent, "amount", None),
        currency=getattr(intent, "currency", None),
        status=intent.status,
        metadata={"orderid": str(order_id)},
    )
    try:
        result = state.event_router.route(event, record=False)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Order store unavailable")

    logger.info(
        "Manual reconcile of order %s by %s: %s -> %s",
        order_id,
        claims.get("sub", "unknown") if isinstance(claims, dict) else "operator",
        event.type,
        result.outcome,
    )
    if result.notify:
        background_tasks.add_task(state.dispatcher.dispatch, result.order)

    return {
        "order_id": order_id,
        "event_type": event.type,
        "outcome": result.outcome,
        "status": result.order.status.value if result.order else order.status,
    }
