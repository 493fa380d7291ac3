"""Polar webhook verification and event parsing (Standard Webhooks format)."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Mapping, Optional

from standardwebhooks.webhooks import Webhook
from standardwebhooks.webhooks import WebhookVerificationError as StandardWebhookError

from visionboard.errors import VisionBoardError


class WebhookVerificationError(VisionBoardError):
    """Raised when a webhook signature or timestamp does not check out."""
    status_code = 403


@dataclass
class OrderPaid:
    """The parts of an `order.paid` event the ledger needs."""
    order_id: str
    external_user_id: Optional[str]
    customer_id: Optional[str]
    checkout_id: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        """Checkout id when present, so the webhook and checkout verification grant once between them."""
        return self.checkout_id or self.order_id


def webhook_for(secret: str) -> Webhook:
    """
    Standard Webhooks verifier keyed the way Polar keys deliveries.

    Polar signs with the raw secret string as the HMAC key, while the
    library expects a base64 secret, so the secret is encoded first.
    """
    return Webhook(base64.b64encode(secret.encode("utf-8")).decode("ascii"))


def verify(secret: str, headers: Mapping[str, str], body: bytes) -> dict:
    """
    Verify a webhook delivery and return its decoded JSON payload.

    Raises:
        WebhookVerificationError: Missing headers, stale timestamp, bad
            signature or a body that is not JSON.
    """
    try:
        return webhook_for(secret).verify(body, dict(headers))
    except StandardWebhookError as e:
        raise WebhookVerificationError(str(e)) from e
    except ValueError as e:
        raise WebhookVerificationError("Webhook body is not JSON") from e


def parse_order_paid(payload: dict) -> Optional[OrderPaid]:
    """Extract an OrderPaid from an event payload, or None for other event types."""
    if payload.get("type") != "order.paid":
        return None
    order = payload.get("data") or {}
    customer = order.get("customer") or {}
    order_id = order.get("id")
    if not order_id:
        return None
    return OrderPaid(
        order_id=order_id,
        external_user_id=customer.get("external_id") or customer.get("externalId"),
        customer_id=customer.get("id"),
        checkout_id=order.get("checkout_id") or order.get("checkoutId"),
    )
