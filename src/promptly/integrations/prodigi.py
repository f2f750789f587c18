"""Client for the Prodigi print-on-demand API (v4).

Only the endpoints the platform uses are wrapped: quotes, order creation and
lookup, and the order actions (cancel, recipient change, shipping method
change, metadata update).  All requests authenticate with the ``X-API-Key``
header.  Non-2xx responses raise :class:`ProdigiError`.

Usage Example
-------------
    client = ProdigiClient(api_key="...", base_url="https://api.sandbox.prodigi.com/v4.0")
    actions = client.get_order_actions("ord_1469466")
    if actions.get("cancel", {}).get("isAvailable") == "Yes":
        client.cancel_order("ord_1469466")
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from promptly.core.errors import PromptlyError, ValidationError

logger = logging.getLogger(__name__)

ShippingMethodName = Literal["Budget", "Standard", "Express", "Overnight"]


class ProdigiError(PromptlyError):
    """Raised when Prodigi rejects a request or cannot be reached."""

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class ProdigiClient:
    """Thin synchronous wrapper over the Prodigi REST API.

    Args:
        api_key: Prodigi API key.
        base_url: API root including the version segment.
        timeout: Request timeout in seconds.
        callback_url: Default webhook URL attached to new orders.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.sandbox.prodigi.com/v4.0",
        *,
        timeout: float = 30.0,
        callback_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.callback_url = callback_url
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"X-API-Key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self.client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Prodigi request to {path} failed: {e}")
            raise ProdigiError(f"Failed to {action}: {e}") from e

        if response.is_error:
            detail = response.reason_phrase
            try:
                body = response.json()
            except ValueError:
                body = None
            if body:
                detail = f"{detail} - {body}"
            logger.error(f"Prodigi {method} {path} returned {response.status_code}: {detail}")
            raise ProdigiError(f"Failed to {action}: {detail}", response.status_code)

        if not response.content:
            return {}
        return response.json()

    def get_quote(
        self,
        destination_country_code: str,
        items: list[dict[str, Any]],
        *,
        shipping_method: ShippingMethodName | None = None,
        currency_code: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "destinationCountryCode": destination_country_code,
            "items": items,
        }
        if shipping_method:
            payload["shippingMethod"] = shipping_method
        if currency_code:
            payload["currencyCode"] = currency_code
        return self._request("POST", "/quotes", action="get quote", json=payload)

    def create_order(
        self,
        order: dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Submit an order for fulfilment.

        Every item must carry an asset URL.  Items default to
        ``fillPrintArea`` sizing and the order to the configured callback URL.

        Raises:
            ValidationError: An item has no artwork URL.
        """
        items = []
        for item in order.get("items", []):
            assets = item.get("assets") or []
            if not assets or not assets[0].get("url"):
                raise ValidationError(f"Missing artwork URL for SKU: {item.get('sku')}")
            items.append({**item, "sizing": item.get("sizing") or "fillPrintArea"})

        payload = {**order, "items": items}
        if not payload.get("callbackUrl") and self.callback_url:
            payload["callbackUrl"] = self.callback_url

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        result = self._request("POST", "/orders", action="create order", json=payload, headers=headers)
        logger.info(f"Created Prodigi order {result.get('order', {}).get('id')}")
        return result

    def get_order(self, prodigi_order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{prodigi_order_id}", action="get order")

    def get_order_actions(self, prodigi_order_id: str) -> dict[str, Any]:
        """Return the ``actions`` availability map for an order."""
        data = self._request(
            "GET", f"/orders/{prodigi_order_id}/actions", action="check order actions"
        )
        return data.get("actions") or {}

    def cancel_order(self, prodigi_order_id: str) -> dict[str, Any]:
        return self._request(
            "POST", f"/orders/{prodigi_order_id}/actions/cancel", action="cancel order"
        )

    def update_recipient(self, prodigi_order_id: str, recipient: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/orders/{prodigi_order_id}/actions/updateRecipient",
            action="update recipient",
            json={"recipient": recipient},
        )

    def update_shipping_method(
        self, prodigi_order_id: str, shipping_method: ShippingMethodName
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/orders/{prodigi_order_id}/actions/updateShippingMethod",
            action="update shipping method",
            json={"shippingMethod": shipping_method},
        )

    def update_metadata(self, prodigi_order_id: str, metadata: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/orders/{prodigi_order_id}/actions/updateMetadata",
            action="update metadata",
            json={"metadata": metadata},
        )
