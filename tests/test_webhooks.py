"""Tests for Polar webhook verification and parsing."""

from datetime import datetime, timezone
import base64
import hashlib
import hmac
import json
import time

import pytest

from visionboard.webhooks import WebhookVerificationError, parse_order_paid, verify, webhook_for

SECRET = "test-webhook-secret"


def _polar_signature(secret, msg_id, timestamp, body):
    """Signature computed the way Polar signs deliveries: HMAC keyed by the raw secret."""
    signed = f"{msg_id}.{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def _headers(body, secret=SECRET, msg_id="msg_1", timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": _polar_signature(secret, msg_id, timestamp, body),
    }


class TestVerify:
    def test_polar_signed_delivery(self):
        """A delivery signed the way Polar signs it is accepted."""
        body = json.dumps({"type": "order.paid"})

        assert verify(SECRET, _headers(body), body.encode()) == {"type": "order.paid"}

    def test_signs_like_polar(self):
        """The verifier's own signature matches Polar's scheme."""
        now = datetime.now(timezone.utc)
        ts = int(now.timestamp())

        assert webhook_for(SECRET).sign("msg_1", now, "{}") == _polar_signature(SECRET, "msg_1", ts, "{}")

    def test_header_names_are_case_insensitive(self):
        """Header lookup ignores case."""
        headers = {k.title(): v for k, v in _headers("{}").items()}

        assert verify(SECRET, headers, b"{}") == {}

    def test_multiple_signatures_one_valid(self):
        """Any one matching v1 signature is enough."""
        headers = _headers("{}")
        headers["webhook-signature"] = "v1,bm90LXZhbGlk " + headers["webhook-signature"]

        assert verify(SECRET, headers, b"{}") == {}

    def test_tampered_body(self):
        """A body changed after signing is rejected."""
        headers = _headers('{"amount": 1}')

        with pytest.raises(WebhookVerificationError):
            verify(SECRET, headers, b'{"amount": 1000}')

    def test_wrong_secret(self):
        """A delivery signed with another secret is rejected."""
        with pytest.raises(WebhookVerificationError):
            verify("other-secret", _headers("{}"), b"{}")

    def test_stale_timestamp(self):
        """Deliveries older than the tolerance window are rejected."""
        headers = _headers("{}", timestamp=int(time.time()) - 600)

        with pytest.raises(WebhookVerificationError, match="too old"):
            verify(SECRET, headers, b"{}")

    def test_missing_headers(self):
        """Unsigned deliveries are rejected."""
        with pytest.raises(WebhookVerificationError, match="Missing"):
            verify(SECRET, {}, b"{}")

    def test_non_json_body(self):
        """A correctly signed body that is not JSON is rejected."""
        with pytest.raises(WebhookVerificationError, match="not JSON"):
            verify(SECRET, _headers("not json"), b"not json")

    def test_status_code(self):
        """Verification failures map to 403."""
        assert WebhookVerificationError("x").status_code == 403


class TestParseOrderPaid:
    def test_order_paid(self):
        """order.paid yields order, customer and checkout ids."""
        order = parse_order_paid(
            {
                "type": "order.paid",
                "data": {
                    "id": "ord_1",
                    "checkout_id": "chk_1",
                    "customer": {"id": "cus_1", "external_id": "user_1"},
                },
            }
        )

        assert order.order_id == "ord_1"
        assert order.external_user_id == "user_1"
        assert order.customer_id == "cus_1"
        assert order.idempotency_key == "chk_1"

    def test_camel_case_fields(self):
        """camelCase payload fields are understood; order id is the fallback key."""
        order = parse_order_paid(
            {"type": "order.paid", "data": {"id": "ord_1", "customer": {"externalId": "user_1"}}}
        )

        assert order.external_user_id == "user_1"
        assert order.idempotency_key == "ord_1"

    def test_other_events_ignored(self):
        """Other event types and orders without ids are ignored."""
        assert parse_order_paid({"type": "checkout.updated", "data": {"id": "x"}}) is None
        assert parse_order_paid({"type": "order.paid", "data": {}}) is None
