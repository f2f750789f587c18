"""Square payments client.

Orders are paid through Square; cancellations and shipping downgrades give
money back through ``POST /v2/refunds``.  Credit packs are sold through
hosted payment links (``POST /v2/online-checkout/payment-links``) whose
completion arrives as a signed ``payment.updated`` webhook.  Amounts are
passed in major units (dollars) and converted to minor units (cents) on the
wire.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from promptly.core.errors import PromptlyError

logger = logging.getLogger(__name__)


class PaymentError(PromptlyError):
    """Raised when Square rejects a request or cannot be reached."""

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: float


@dataclass(frozen=True)
class PaymentLink:
    """A hosted checkout page.  ``order_id`` is Square's order, not ours."""

    id: str
    url: str
    order_id: str


def to_minor_units(amount: float) -> int:
    """Convert a major-unit amount to integer cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def verify_signature(
    body: bytes,
    signature: str,
    signature_key: str,
    notification_url: str = "",
) -> bool:
    """Check an ``x-square-hmacsha256-signature`` header.

    Square signs the subscription's notification URL followed by the raw
    request body with HMAC-SHA256 and sends the base64 digest.
    """
    mac = hmac.new(signature_key.encode(), notification_url.encode() + body, hashlib.sha256)
    expected = base64.b64encode(mac.digest()).decode()
    return hmac.compare_digest(expected.encode(), signature.encode())


class SquareClient:
    """Refunds and payment links against the Square REST API.

    Args:
        access_token: Square access token.
        base_url: API root (sandbox or production).
        square_version: ``Square-Version`` header value.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport for tests.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://connect.squareupsandbox.com",
        *,
        square_version: str = "2024-01-18",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": square_version,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _post(self, path: str, payload: dict[str, Any], failure: str) -> dict[str, Any]:
        try:
            response = self.client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Square {path} failed: {e}")
            raise PaymentError(f"{failure}: {e}") from e

        if response.is_error:
            try:
                errors = response.json().get("errors") or []
            except ValueError:
                errors = []
            detail = "; ".join(err.get("detail", err.get("code", "")) for err in errors)
            logger.error(f"Square {path} rejected ({response.status_code}): {detail}")
            raise PaymentError(
                f"{failure}: {detail or response.reason_phrase}",
                response.status_code,
            )
        return response.json()

    def refund(
        self,
        payment_id: str,
        amount: float,
        currency: str,
        reason: str,
        order_id: int | None = None,
    ) -> RefundResult:
        """Refund *amount* of a payment.

        Raises:
            PaymentError: Non-positive amount, transport failure or a Square
                error response.
        """
        if amount <= 0:
            raise PaymentError("Refund amount must be positive")

        payload = {
            "idempotency_key": uuid.uuid4().hex,
            "payment_id": payment_id,
            "amount_money": {"amount": to_minor_units(amount), "currency": currency},
            "reason": reason[:192],
        }
        refund = self._post("/v2/refunds", payload, "Failed to process refund").get("refund") or {}
        logger.info(f"Refund {refund.get('id')} issued for order {order_id} ({amount} {currency})")
        return RefundResult(
            refund_id=refund.get("id", ""),
            status=refund.get("status", "PENDING"),
            amount=amount,
        )

    def create_payment_link(
        self,
        *,
        location_id: str,
        name: str,
        amount: float,
        currency: str,
        note: str,
        redirect_url: str,
        metadata: dict[str, str],
        buyer_email: str | None = None,
    ) -> PaymentLink:
        """Create a one-item hosted checkout page.

        *metadata* is attached to the Square order so the webhook can be
        traced back to the purchase.

        Raises:
            PaymentError: Transport failure, a Square error response or a
                response without a link.
        """
        payload: dict[str, Any] = {
            "idempotency_key": uuid.uuid4().hex,
            "order": {
                "location_id": location_id,
                "line_items": [
                    {
                        "name": name,
                        "quantity": "1",
                        "base_price_money": {
                            "amount": to_minor_units(amount),
                            "currency": currency,
                        },
                        "note": note,
                    }
                ],
                "metadata": metadata,
            },
            "checkout_options": {
                "redirect_url": redirect_url,
                "ask_for_shipping_address": False,
            },
        }
        if buyer_email:
            payload["pre_populated_data"] = {"buyer_email": buyer_email}

        data = self._post(
            "/v2/online-checkout/payment-links", payload, "Failed to create checkout session"
        )
        link = data.get("payment_link") or {}
        if not link.get("url") or not link.get("order_id"):
            raise PaymentError("Failed to create checkout session: no payment link returned")
        logger.info(f"Payment link {link.get('id')} created ({amount} {currency})")
        return PaymentLink(id=link.get("id", ""), url=link["url"], order_id=link["order_id"])
