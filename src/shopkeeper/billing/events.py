"""Webhook envelope verification and parsing."""

import json
from dataclasses import dataclass, field
from typing import Any

import stripe

from shopkeeper.billing.errors import InvalidSignature, MalformedPayload

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class BillingEvent:
    """Verified Stripe event."""

    id: str
    type: str
    created: int  # epoch seconds; used as the state version
    object: dict[str, Any]
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def version(self) -> int:
        return self.created


def verify_event(
    payload: bytes,
    sig_header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> BillingEvent:
    """
    Verify a signed webhook body and parse it into a BillingEvent.

    Args:
        payload: Raw request body, exactly as received
        sig_header: Stripe-Signature header value
        secret: Webhook endpoint signing secret
        tolerance: Maximum signature age in seconds

    Returns:
        Parsed BillingEvent

    Raises:
        InvalidSignature: On signature mismatch or expired timestamp
        MalformedPayload: If the body is not a well-formed event
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPayload("Webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(str(e)) from e

    try:
        data = json.loads(text)
    except ValueError as e:
        raise MalformedPayload(f"Webhook body is not valid JSON: {e}") from e

    return parse_event(data)


def parse_event(data: Any) -> BillingEvent:
    """
    Parse a decoded Stripe event envelope.

    Raises:
        MalformedPayload: If id, type, created or data.object is missing
    """
    if not isinstance(data, dict):
        raise MalformedPayload("Event envelope is not an object")

    event_id = data.get("id")
    event_type = data.get("type")
    created = data.get("created")
    body = data.get("data")
    obj = body.get("object") if isinstance(body, dict) else None

    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("Event missing id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload(f"Event {event_id} missing type")
    if isinstance(created, bool) or not isinstance(created, int):
        raise MalformedPayload(f"Event {event_id} missing created timestamp")
    if not isinstance(obj, dict):
        raise MalformedPayload(f"Event {event_id} missing data.object")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedPayload(f"Event {event_id} has non-mapping metadata")

    return BillingEvent(
        id=event_id,
        type=event_type,
        created=created,
        object=obj,
        metadata={str(k): str(v) for k, v in metadata.items()},
    )
