"""Tests for promptly.integrations.prodigi - the Prodigi REST client."""

from __future__ import annotations

import json

import httpx
import pytest

from promptly.core.errors import ValidationError
from promptly.integrations.prodigi import ProdigiClient, ProdigiError


def _order(**overrides) -> dict:
    order = {
        "merchantReference": "PP-42",
        "shippingMethod": "Standard",
        "recipient": {"name": "Ada", "address": {"countryCode": "GB"}},
        "items": [
            {
                "sku": "GLOBAL-TEE-GIL-64V00",
                "copies": 1,
                "assets": [{"printArea": "front", "url": "https://cdn.test/art.png"}],
            }
        ],
    }
    order.update(overrides)
    return order


class TestRequests:
    """Test request shaping."""

    def test_api_key_header(self, prodigi_client: ProdigiClient, prodigi_api):
        prodigi_client.get_order("ord_1")
        assert prodigi_api.requests[0].headers["X-API-Key"] == "test-prodigi-key"
        assert prodigi_api.requests[0].url.path == "/v4.0/orders/ord_1"

    def test_get_order_actions_unwraps(self, prodigi_client: ProdigiClient, prodigi_api):
        actions = prodigi_client.get_order_actions("ord_1")
        assert actions["cancel"] == {"isAvailable": "Yes"}

    def test_missing_actions_key(self):
        client = ProdigiClient(
            "k",
            "https://prodigi.test/v4.0",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"outcome": "Ok"})),
        )
        assert client.get_order_actions("ord_1") == {}

    def test_quote_payload(self, prodigi_client: ProdigiClient, prodigi_api):
        prodigi_client.get_quote(
            "US",
            [{"sku": "TEE-SS-STTU755", "copies": 2}],
            shipping_method="Budget",
            currency_code="USD",
        )
        body = json.loads(prodigi_api.calls("/quotes")[0].content)
        assert body == {
            "destinationCountryCode": "US",
            "items": [{"sku": "TEE-SS-STTU755", "copies": 2}],
            "shippingMethod": "Budget",
            "currencyCode": "USD",
        }


class TestCreateOrder:
    """Test create_order defaults and validation."""

    def test_defaults_sizing_and_callback(self, prodigi_client: ProdigiClient, prodigi_api):
        result = prodigi_client.create_order(_order(), idempotency_key="order-42")
        assert result["order"]["id"] == "ord_900001"

        request = prodigi_api.calls("/orders")[0]
        body = json.loads(request.content)
        assert body["items"][0]["sizing"] == "fillPrintArea"
        assert body["callbackUrl"] == "https://promptly.test/api/webhooks/prodigi"
        assert request.headers["Idempotency-Key"] == "order-42"

    def test_explicit_values_kept(self, prodigi_client: ProdigiClient, prodigi_api):
        order = _order(callbackUrl="https://other.test/hook")
        order["items"][0]["sizing"] = "fitPrintArea"
        prodigi_client.create_order(order)

        body = json.loads(prodigi_api.calls("/orders")[0].content)
        assert body["items"][0]["sizing"] == "fitPrintArea"
        assert body["callbackUrl"] == "https://other.test/hook"

    def test_missing_asset_url(self, prodigi_client: ProdigiClient, prodigi_api):
        order = _order()
        order["items"][0]["assets"] = [{"printArea": "front"}]
        with pytest.raises(ValidationError, match="GLOBAL-TEE-GIL-64V00"):
            prodigi_client.create_order(order)
        assert prodigi_api.requests == []


class TestErrors:
    def test_error_status_raises(self, prodigi_client: ProdigiClient, prodigi_api):
        prodigi_api.fail["/actions/cancel"] = 409
        with pytest.raises(ProdigiError) as exc_info:
            prodigi_client.cancel_order("ord_1")
        assert exc_info.value.upstream_status == 409
        assert exc_info.value.status_code == 502
        assert "cancel order" in exc_info.value.message

    def test_transport_error_raises(self):
        def broken(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = ProdigiClient("k", "https://prodigi.test/v4.0", transport=httpx.MockTransport(broken))
        with pytest.raises(ProdigiError, match="connection refused"):
            client.get_order("ord_1")
