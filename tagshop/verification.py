"""Stripe webhook signature verification.

Stripe sends ``Stripe-Signature: t=<timestamp>,v1=<hex hmac>[,v1=...]`` where
each ``v1`` is HMAC-SHA256 of ``"<timestamp>.<raw body>"`` keyed with the
endpoint secret. The exact bytes received are what gets signed, so the body is
only decoded as JSON after the signature has been checked.
"""

import json
import logging
import time
from typing import Optional

import stripe

from tagshop.errors import MalformedEvent, SecretNotConfigured, SignatureInvalid, SignatureMissing
from tagshop.events import Event, parse_event

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300  # seconds


def _timestamp(signature_header: str) -> Optional[int]:
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    shared_secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE,
) -> Event:
    """Authenticate a raw webhook body and return the typed event it carries."""
    if not shared_secret:
        raise SecretNotConfigured("Webhook signing secret is not configured")
    if not signature_header:
        raise SignatureMissing("Missing Stripe-Signature header")

    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureInvalid("Webhook body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(str(exc)) from exc

    # The SDK only rejects stale timestamps; reject ones from the future as well
    timestamp = _timestamp(signature_header)
    if timestamp is None or timestamp > time.time() + tolerance:
        raise SignatureInvalid("Timestamp outside the tolerance zone")

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise MalformedEvent("Webhook body is not valid JSON") from exc

    event = parse_event(payload)
    logger.debug("Verified webhook event id=%s type=%s", event.id, event.type)
    return event
