"""Tests for promptly.integrations.square - refunds, payment links and webhook signatures."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

import pytest

from promptly.integrations.square import (
    PaymentError,
    SquareClient,
    to_minor_units,
    verify_signature,
)


class TestMinorUnits:
    @pytest.mark.parametrize(
        ("amount", "cents"),
        [(45.0, 4500), (0.1 + 0.2, 30), (19.995, 2000), (5, 500)],
    )
    def test_conversion(self, amount: float, cents: int):
        assert to_minor_units(amount) == cents


class TestRefund:
    """Test SquareClient.refund."""

    def test_refund_request(self, refunds: SquareClient, square_api):
        result = refunds.refund("pay_1", 12.5, "USD", "Customer requested order cancellation", 7)

        assert result.refund_id == "rf_1"
        assert result.status == "PENDING"
        assert result.amount == 12.5

        request = square_api.requests[0]
        assert request.url.path == "/v2/refunds"
        assert request.headers["Authorization"] == "Bearer test-square-token"
        assert request.headers["Square-Version"] == "2024-01-18"
        body = json.loads(request.content)
        assert body["payment_id"] == "pay_1"
        assert body["amount_money"] == {"amount": 1250, "currency": "USD"}
        assert body["idempotency_key"]

    def test_idempotency_keys_unique(self, refunds: SquareClient, square_api):
        refunds.refund("pay_1", 1, "USD", "a")
        refunds.refund("pay_1", 1, "USD", "b")
        keys = {json.loads(r.content)["idempotency_key"] for r in square_api.requests}
        assert len(keys) == 2

    @pytest.mark.parametrize("amount", [0, -3])
    def test_non_positive_amount(self, refunds: SquareClient, square_api, amount: float):
        with pytest.raises(PaymentError):
            refunds.refund("pay_1", amount, "USD", "nope")
        assert square_api.requests == []

    def test_error_response(self, refunds: SquareClient, square_api):
        square_api.status_code = 400
        with pytest.raises(PaymentError, match="Refund declined") as exc_info:
            refunds.refund("pay_1", 10, "USD", "test")
        assert exc_info.value.upstream_status == 400


class TestPaymentLink:
    """Test SquareClient.create_payment_link."""

    def test_request_shape(self, refunds: SquareClient, square_api):
        link = refunds.create_payment_link(
            location_id="LOC_TEST",
            name="Creator Pack",
            amount=14.99,
            currency="USD",
            note="110 AI generation credits",
            redirect_url="https://promptly.test/checkout/credits/success",
            metadata={"userId": "alice", "packId": "creator"},
            buyer_email="alice@example.com",
        )

        assert link.url == "https://square.link/u/pl_1"
        assert link.order_id == "sq_order_1"
        request = square_api.requests[0]
        assert request.url.path == "/v2/online-checkout/payment-links"
        body = json.loads(request.content)
        assert body["order"]["location_id"] == "LOC_TEST"
        assert body["order"]["line_items"][0]["base_price_money"] == {"amount": 1499, "currency": "USD"}
        assert body["order"]["metadata"] == {"userId": "alice", "packId": "creator"}
        assert body["pre_populated_data"] == {"buyer_email": "alice@example.com"}

    def test_error_response(self, refunds: SquareClient, square_api):
        square_api.status_code = 401
        with pytest.raises(PaymentError, match="Failed to create checkout session") as exc_info:
            refunds.create_payment_link(
                location_id="LOC_TEST",
                name="Starter Pack",
                amount=4.99,
                currency="USD",
                note="25 credits",
                redirect_url="https://promptly.test/",
                metadata={},
            )
        assert exc_info.value.upstream_status == 401


class TestVerifySignature:
    KEY = "test-webhook-key"
    URL = "https://promptly.test/api/webhooks/square/credits"

    def _sign(self, body: bytes, url: str = URL) -> str:
        digest = hmac.new(self.KEY.encode(), url.encode() + body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def test_valid(self):
        body = b'{"type": "payment.updated"}'
        assert verify_signature(body, self._sign(body), self.KEY, self.URL) is True

    def test_tampered_body(self):
        signature = self._sign(b'{"type": "payment.updated"}')
        assert verify_signature(b'{"type": "payment.created"}', signature, self.KEY, self.URL) is False

    def test_url_is_signed(self):
        body = b"{}"
        assert verify_signature(body, self._sign(body, "https://evil.test/"), self.KEY, self.URL) is False

    def test_garbage_signature(self):
        assert verify_signature(b"{}", "not-base64", self.KEY, self.URL) is False
