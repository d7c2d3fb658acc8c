from typing import Dict, List, Optional

import stripe

from tagshop.events import Event
from tagshop.verification import DEFAULT_TOLERANCE, verify


class PaymentProviderClient:
    """Thin wrapper over the Stripe SDK, bound to one secret key."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    def create_payment_intent(self, amount: int, currency: str, metadata: Dict[str, str]):
        idempotency_key = f"order-{metadata['orderid']}-{amount}" if metadata.get("orderid") else None
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
            api_key=self.api_key,
        )

    def retrieve_payment_intent(self, payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)

    def confirm_payment_intent(self, payment_intent_id: str, payment_method: str):
        return stripe.PaymentIntent.confirm(
            payment_intent_id,
            payment_method=payment_method,
            api_key=self.api_key,
        )

    def create_checkout_session(
        self,
        amount: Optional[int],
        currency: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        line_items: Optional[List[dict]] = None,
    ):
        if not line_items:
            line_items = [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": "Custom Laser Engraved Pet Tag"},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ]
        return stripe.checkout.Session.create(
            mode="payment",
            line_items=line_items,
            metadata=metadata,
            # Copy metadata onto the PaymentIntent so its own events resolve the order too
            payment_intent_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
            api_key=self.api_key,
        )

    def retrieve_checkout_session(self, session_id: str):
        return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)

    def verify_webhook_signature(
        self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str],
        tolerance: int = DEFAULT_TOLERANCE,
    ) -> Event:
        return verify(raw_body, signature_header, secret, tolerance)
