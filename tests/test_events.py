"""Tests for webhook envelope verification and parsing."""

import time

import pytest

from factories import WEBHOOK_SECRET, encode, sign, subscription_event
from shopkeeper.billing.errors import InvalidSignature, MalformedPayload
from shopkeeper.billing.events import parse_event, verify_event


class TestVerifyEvent:
    """Signature and timestamp verification."""

    def test_valid_signature_parses_event(self):
        """A correctly signed body is verified and parsed."""
        payload = encode(subscription_event("evt_1", "active", version=2))

        event = verify_event(payload, sign(payload), WEBHOOK_SECRET)

        assert event.id == "evt_1"
        assert event.type == "customer.subscription.updated"
        assert event.version == 2
        assert event.object["id"] == "sub_1"

    def test_wrong_secret_rejected(self):
        """A signature made with another secret is rejected."""
        payload = encode(subscription_event("evt_1", "active", version=2))

        with pytest.raises(InvalidSignature):
            verify_event(payload, sign(payload, secret="whsec_other"), WEBHOOK_SECRET)

    def test_tampered_body_rejected(self):
        """Any change to the signed body invalidates the signature."""
        payload = encode(subscription_event("evt_1", "active", version=2))
        header = sign(payload)
        tampered = payload.replace(b"active", b"canceled")

        with pytest.raises(InvalidSignature):
            verify_event(tampered, header, WEBHOOK_SECRET)

    def test_expired_timestamp_rejected(self):
        """Signatures older than the tolerance are rejected."""
        payload = encode(subscription_event("evt_1", "active", version=2))
        header = sign(payload, timestamp=int(time.time()) - 301)

        with pytest.raises(InvalidSignature):
            verify_event(payload, header, WEBHOOK_SECRET, tolerance=300)

    def test_timestamp_within_tolerance_accepted(self):
        """Signatures inside the tolerance window are accepted."""
        payload = encode(subscription_event("evt_1", "active", version=2))
        header = sign(payload, timestamp=int(time.time()) - 60)

        event = verify_event(payload, header, WEBHOOK_SECRET, tolerance=300)

        assert event.id == "evt_1"

    def test_garbage_header_rejected(self):
        """An unparseable Stripe-Signature header is rejected."""
        payload = encode(subscription_event("evt_1", "active", version=2))

        with pytest.raises(InvalidSignature):
            verify_event(payload, "not-a-signature", WEBHOOK_SECRET)

    def test_signed_non_json_is_malformed(self):
        """A validly signed non-JSON body is malformed, not forged."""
        payload = b"this is not json"

        with pytest.raises(MalformedPayload):
            verify_event(payload, sign(payload), WEBHOOK_SECRET)

    def test_non_utf8_body_is_malformed(self):
        """Bodies that are not UTF-8 are malformed."""
        with pytest.raises(MalformedPayload):
            verify_event(b"\xff\xfe", "t=1,v1=abc", WEBHOOK_SECRET)


class TestParseEvent:
    """Envelope shape validation."""

    def test_metadata_extracted_as_strings(self):
        """Object metadata values are carried as strings."""
        data = subscription_event("evt_1", "active", version=1)
        data["data"]["object"]["metadata"] = {"order_id": 42}

        event = parse_event(data)

        assert event.metadata == {"order_id": "42"}

    @pytest.mark.parametrize("missing", ["id", "type", "created", "data"])
    def test_missing_envelope_field(self, missing):
        """Each required envelope field is enforced."""
        data = subscription_event("evt_1", "active", version=1)
        del data[missing]

        with pytest.raises(MalformedPayload):
            parse_event(data)

    def test_non_integer_created(self):
        """created must be an integer timestamp."""
        data = subscription_event("evt_1", "active", version=1)
        data["created"] = "yesterday"

        with pytest.raises(MalformedPayload):
            parse_event(data)

    def test_envelope_must_be_object(self):
        """A non-object envelope is malformed."""
        with pytest.raises(MalformedPayload):
            parse_event(["evt_1"])

    def test_data_must_be_object(self):
        """A non-object data field is malformed."""
        data = subscription_event("evt_1", "active", version=1)
        data["data"] = ["sub_1"]

        with pytest.raises(MalformedPayload):
            parse_event(data)
