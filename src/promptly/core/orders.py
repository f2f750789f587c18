"""Order actions gated on Prodigi availability, plus webhook application.

Action gate
-----------
Once an order is with Prodigi it can only be cancelled, re-addressed or moved
to a cheaper shipping method while Prodigi says so.  Prodigi reports this as
an ``actions`` map::

    {"cancel": {"isAvailable": "Yes"},
     "changeRecipientDetails": {"isAvailable": "No", "reason": "In production"},
     ...}

:meth:`OrderActionService.get_available_actions` serves the map from the
order row while ``last_action_check`` is younger than the cache TTL and asks
Prodigi otherwise, persisting the fresh answer.  Mutations never trust the
cache: they always re-check with Prodigi immediately before acting, and they
clear the cache afterwards so the next read reflects the new state.

Refunds
-------
Cancellations refund the full order total and shipping downgrades refund
the cost difference, both through Square.  The Square payment id is read
from the order metadata and must be present before Prodigi is touched.

Webhooks
--------
:meth:`OrderActionService.apply_prodigi_event` applies a Prodigi CloudEvents
1.0 callback: stage changes update the order status, shipments are upserted
and failing issues are logged to ``order_processing_errors``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from promptly.core.database import (
    Database,
    dumps_json,
    loads_json,
    parse_iso,
    to_iso,
    utcnow,
)
from promptly.core.errors import (
    ActionUnavailableError,
    ConflictError,
    NotFoundError,
    OrderNotSubmittedError,
    ValidationError,
)
from promptly.integrations.square import PaymentError, RefundResult

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class ShippingMethod(str, Enum):
    BUDGET = "Budget"
    STANDARD = "Standard"
    EXPRESS = "Express"
    OVERNIGHT = "Overnight"


SHIPPING_COSTS: dict[str, float] = {
    ShippingMethod.BUDGET.value: 5.0,
    ShippingMethod.STANDARD.value: 10.0,
    ShippingMethod.EXPRESS.value: 20.0,
    ShippingMethod.OVERNIGHT.value: 35.0,
}

_STAGE_TO_STATUS = {
    "InProgress": OrderStatus.PENDING,
    "Complete": OrderStatus.COMPLETED,
    "Cancelled": OrderStatus.CANCELED,
}

_EVENT_TYPE = re.compile(r"^com\.prodigi\.(.+?)#(.+)$")


class FulfilmentClient(Protocol):
    def get_order_actions(self, prodigi_order_id: str) -> dict[str, Any]: ...

    def cancel_order(self, prodigi_order_id: str) -> dict[str, Any]: ...

    def update_recipient(self, prodigi_order_id: str, recipient: dict[str, Any]) -> dict[str, Any]: ...

    def update_shipping_method(self, prodigi_order_id: str, shipping_method: str) -> dict[str, Any]: ...

    def update_metadata(self, prodigi_order_id: str, metadata: dict[str, Any]) -> dict[str, Any]: ...


class RefundGateway(Protocol):
    def refund(
        self, payment_id: str, amount: float, currency: str, reason: str, order_id: int | None = None
    ) -> RefundResult: ...


@dataclass(frozen=True)
class Address:
    name: str
    address_line1: str
    city: str
    postal_code: str
    country_code: str
    email: str | None = None
    phone_number: str | None = None
    address_line2: str | None = None
    state: str | None = None

    def to_prodigi(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email or "",
            "phoneNumber": self.phone_number,
            "address": {
                "line1": self.address_line1,
                "line2": self.address_line2,
                "postalOrZipCode": self.postal_code,
                "countryCode": self.country_code,
                "townOrCity": self.city,
                "stateOrCounty": self.state,
            },
        }


@dataclass(frozen=True)
class Order:
    id: int
    user_id: str | None
    status: OrderStatus
    total_price: float
    shipping_method: str | None
    prodigi_order_id: str | None
    metadata: dict[str, Any]
    available_actions: dict[str, Any] | None
    last_action_check: datetime | None
    recipient: Address | None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["last_action_check"] = (
            to_iso(self.last_action_check) if self.last_action_check else None
        )
        return data


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    message: str
    refund_id: str | None = None
    refund_amount: float | None = None


def parse_event_type(event_type: str) -> dict[str, Any] | None:
    """Split ``com.prodigi.order.status.stage.changed#InProgress`` into parts."""
    match = _EVENT_TYPE.match(event_type or "")
    if not match:
        return None
    path, value = match.groups()
    return {
        "object": path.split(".")[0],
        "path": path,
        "value": value,
        "is_stage_change": path == "order.status.stage.changed",
        "is_shipment": "shipment" in path,
    }


def map_stage_to_status(stage: str) -> OrderStatus:
    status = _STAGE_TO_STATUS.get(stage)
    if status is None:
        logger.warning(f"Unknown Prodigi stage {stage!r}, treating as PENDING")
        return OrderStatus.PENDING
    return status


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _dict_items(value: Any) -> list[dict[str, Any]]:
    """Keep the object entries of a JSON array; anything else yields nothing."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def unavailable_actions(reason: str) -> dict[str, dict[str, str]]:
    return {
        name: {"isAvailable": "No", "reason": reason}
        for name in ("cancel", "changeRecipientDetails", "changeShippingMethod")
    }


class OrderActionService:
    """Customer and admin operations on fulfilled orders.

    Args:
        db: Shared database.
        prodigi: Fulfilment client (normally :class:`~promptly.integrations.prodigi.ProdigiClient`).
        refunds: Refund gateway (normally :class:`~promptly.integrations.square.SquareClient`).
        currency: Currency for refunds.
        action_cache_ttl: Freshness window for cached action maps.
        now: Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        db: Database,
        prodigi: FulfilmentClient,
        refunds: RefundGateway,
        *,
        currency: str = "USD",
        action_cache_ttl: timedelta = timedelta(minutes=5),
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.prodigi = prodigi
        self.refunds = refunds
        self.currency = currency
        self.action_cache_ttl = action_cache_ttl
        self.now = now

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def create_order(
        self,
        *,
        user_id: str | None,
        total_price: float,
        shipping_method: str | None = None,
        recipient: Address | None = None,
        prodigi_order_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> Order:
        """Persist a local order record (checkout and seed scripts use this)."""
        now = to_iso(self.now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO orders
                    (user_id, status, total_price, shipping_method, prodigi_order_id,
                     metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    OrderStatus(status).value,
                    total_price,
                    shipping_method,
                    prodigi_order_id,
                    dumps_json(metadata or {}),
                    now,
                    now,
                ),
            )
            order_id = int(cursor.lastrowid)
            if recipient is not None:
                self._write_recipient(conn, order_id, recipient)
        return self.get_order(order_id)

    def _write_recipient(self, conn: sqlite3.Connection, order_id: int, address: Address) -> None:
        conn.execute(
            """
            INSERT INTO recipients
                (order_id, name, email, phone_number, address_line1, address_line2,
                 city, state, postal_code, country_code)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                phone_number = excluded.phone_number,
                address_line1 = excluded.address_line1,
                address_line2 = excluded.address_line2,
                city = excluded.city,
                state = excluded.state,
                postal_code = excluded.postal_code,
                country_code = excluded.country_code
            """,
            (
                order_id,
                address.name,
                address.email,
                address.phone_number,
                address.address_line1,
                address.address_line2,
                address.city,
                address.state,
                address.postal_code,
                address.country_code,
            ),
        )

    def _load(self, conn: sqlite3.Connection, order_id: int) -> Order:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if row is None:
            raise NotFoundError("Order not found")
        rec = conn.execute(
            """
            SELECT name, address_line1, city, postal_code, country_code, email,
                   phone_number, address_line2, state
            FROM recipients WHERE order_id = ?
            """,
            (order_id,),
        ).fetchone()
        return Order(
            id=row["id"],
            user_id=row["user_id"],
            status=OrderStatus(row["status"]),
            total_price=row["total_price"],
            shipping_method=row["shipping_method"],
            prodigi_order_id=row["prodigi_order_id"],
            metadata=loads_json(row["metadata"], {}),
            available_actions=loads_json(row["available_actions"]),
            last_action_check=parse_iso(row["last_action_check"]),
            recipient=Address(**dict(rec)) if rec else None,
        )

    def get_order(self, order_id: int) -> Order:
        with self.db.connection() as conn:
            return self._load(conn, order_id)

    def _update(self, order_id: int, **fields: Any) -> None:
        fields["updated_at"] = to_iso(self.now())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE orders SET {assignments} WHERE id = ?",
                (*fields.values(), order_id),
            )

    @staticmethod
    def _require_prodigi_id(order: Order) -> str:
        if not order.prodigi_order_id:
            raise OrderNotSubmittedError(
                "Order does not have a Prodigi order ID",
                unavailable_actions("No Prodigi order found"),
            )
        return order.prodigi_order_id

    @staticmethod
    def _require_payment_id(order: Order) -> str:
        payment_id = order.metadata.get("squarePaymentId")
        if not payment_id:
            raise ValidationError("No Square payment ID found in order metadata")
        return payment_id

    # ------------------------------------------------------------------
    # Action gate
    # ------------------------------------------------------------------

    def _refresh_actions(self, order: Order) -> dict[str, Any]:
        prodigi_id = self._require_prodigi_id(order)
        actions = self.prodigi.get_order_actions(prodigi_id)
        self._update(
            order.id,
            available_actions=dumps_json(actions),
            last_action_check=to_iso(self.now()),
        )
        return actions

    def get_available_actions(self, order_id: int, *, force_refresh: bool = False) -> dict[str, Any]:
        """Return the order's action availability map.

        Raises:
            NotFoundError: Unknown order.
            OrderNotSubmittedError: The order has no Prodigi id.
        """
        order = self.get_order(order_id)
        self._require_prodigi_id(order)

        if (
            not force_refresh
            and order.available_actions is not None
            and order.last_action_check is not None
            and self.now() - order.last_action_check < self.action_cache_ttl
        ):
            logger.debug(f"Serving cached actions for order {order_id}")
            return order.available_actions

        return self._refresh_actions(order)

    def _require_action(self, order: Order, action: str, default_reason: str) -> None:
        actions = self._refresh_actions(order)
        availability = actions.get(action) or {}
        if availability.get("isAvailable") != "Yes":
            reason = availability.get("reason") or default_reason
            logger.warning(f"Order {order.id}: {action} unavailable ({reason})")
            raise ActionUnavailableError(action, reason)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def cancel_order(self, order_id: int) -> ActionOutcome:
        """Cancel at Prodigi and refund the full order total."""
        order = self.get_order(order_id)
        prodigi_id = self._require_prodigi_id(order)
        if order.status is OrderStatus.CANCELED:
            raise ConflictError("Order is already cancelled")
        payment_id = self._require_payment_id(order)

        self._require_action(
            order,
            "cancel",
            "Order cannot be cancelled at this time (may already be in production)",
        )

        logger.info(f"Cancelling Prodigi order {prodigi_id} for order {order_id}")
        self.prodigi.cancel_order(prodigi_id)

        metadata = {**order.metadata, "cancelledAt": to_iso(self.now())}
        try:
            refund = self.refunds.refund(
                payment_id,
                order.total_price,
                self.currency,
                "Customer requested order cancellation",
                order.id,
            )
        except PaymentError as e:
            # Prodigi has already cancelled; keep the local record in step.
            metadata["refundError"] = e.message
            self._update(
                order_id,
                status=OrderStatus.CANCELED.value,
                metadata=dumps_json(metadata),
                last_action_check=None,
            )
            raise

        metadata["refundId"] = refund.refund_id
        self._update(
            order_id,
            status=OrderStatus.CANCELED.value,
            metadata=dumps_json(metadata),
            last_action_check=None,
        )
        logger.info(f"Order {order_id} cancelled, refund {refund.refund_id}")
        return ActionOutcome(
            success=True,
            refund_id=refund.refund_id,
            refund_amount=order.total_price,
            message="Order cancelled successfully. Refund will be processed in 5-10 business days.",
        )

    def update_shipping_address(self, order_id: int, address: Address) -> ActionOutcome:
        """Change the recipient's address without changing the postal code."""
        order = self.get_order(order_id)
        prodigi_id = self._require_prodigi_id(order)
        if order.recipient is None:
            raise ValidationError("Order does not have recipient information")
        # Tax was calculated for the original destination.
        if order.recipient.postal_code != address.postal_code:
            raise ValidationError(
                "Cannot change postal/zip code. Please cancel and create a new order "
                "if you need to ship to a different location."
            )

        self._require_action(
            order,
            "changeRecipientDetails",
            "Address cannot be updated at this time (order may already be in production)",
        )

        if not address.email and order.recipient.email:
            address = Address(**{**asdict(address), "email": order.recipient.email})
        self.prodigi.update_recipient(prodigi_id, address.to_prodigi())

        with self.db.transaction() as conn:
            self._write_recipient(conn, order_id, address)
            conn.execute(
                "UPDATE orders SET last_action_check = NULL, updated_at = ? WHERE id = ?",
                (to_iso(self.now()), order_id),
            )
        logger.info(f"Shipping address updated for order {order_id}")
        return ActionOutcome(success=True, message="Shipping address updated successfully")

    def downgrade_shipping(self, order_id: int, new_method: ShippingMethod | str) -> ActionOutcome:
        """Move the order to a cheaper shipping method and refund the difference."""
        new_method = ShippingMethod(new_method).value
        order = self.get_order(order_id)
        prodigi_id = self._require_prodigi_id(order)
        if not order.shipping_method:
            raise ValidationError("Order does not have a shipping method")

        current_cost = SHIPPING_COSTS.get(order.shipping_method, 0.0)
        new_cost = SHIPPING_COSTS[new_method]
        if new_cost >= current_cost:
            raise ValidationError(
                "New shipping method must be cheaper than current method. "
                "Upgrades are not supported."
            )
        refund_amount = current_cost - new_cost
        payment_id = self._require_payment_id(order)

        self._require_action(
            order,
            "changeShippingMethod",
            "Shipping method cannot be changed at this time (order may already be in production)",
        )

        logger.info(f"Changing shipping for order {order_id}: {order.shipping_method} -> {new_method}")
        self.prodigi.update_shipping_method(prodigi_id, new_method)

        metadata = {
            **order.metadata,
            "shippingMethodChangedAt": to_iso(self.now()),
            "previousShippingMethod": order.shipping_method,
            "shippingRefundAmount": refund_amount,
        }
        try:
            refund = self.refunds.refund(
                payment_id,
                refund_amount,
                self.currency,
                f"Shipping method changed from {order.shipping_method} to {new_method}",
                order.id,
            )
        except PaymentError as e:
            metadata["shippingRefundError"] = e.message
            self._update(
                order_id,
                shipping_method=new_method,
                metadata=dumps_json(metadata),
                last_action_check=None,
            )
            raise

        metadata["shippingRefundId"] = refund.refund_id
        self._update(
            order_id,
            shipping_method=new_method,
            metadata=dumps_json(metadata),
            last_action_check=None,
        )
        return ActionOutcome(
            success=True,
            refund_id=refund.refund_id,
            refund_amount=refund_amount,
            message=(
                f"Shipping method updated. A refund of ${refund_amount:.2f} "
                "will be processed in 5-10 business days."
            ),
        )

    def update_order_metadata(self, order_id: int, metadata: dict[str, Any]) -> ActionOutcome:
        order = self.get_order(order_id)
        prodigi_id = self._require_prodigi_id(order)
        self.prodigi.update_metadata(prodigi_id, metadata)

        merged = {**order.metadata, **metadata, "metadataUpdatedAt": to_iso(self.now())}
        self._update(order_id, metadata=dumps_json(merged), last_action_check=None)
        return ActionOutcome(success=True, message="Order metadata updated successfully")

    def update_status(self, order_id: int, status: OrderStatus | str) -> Order:
        """Admin override of the local order status."""
        try:
            status = OrderStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid order status: {status}") from e
        self.get_order(order_id)
        self._update(order_id, status=status.value)
        logger.info(f"Order {order_id} status set to {status.value}")
        return self.get_order(order_id)

    def lookup_order(self, order_id: int, email: str) -> Order:
        """Guest lookup: the recipient email must match.

        Mismatches are reported as not found so order ids cannot be enumerated.
        """
        try:
            order = self.get_order(order_id)
        except NotFoundError:
            raise NotFoundError("Order not found") from None
        recipient_email = (order.recipient.email if order.recipient else None) or ""
        if recipient_email.strip().lower() != email.strip().lower():
            raise NotFoundError("Order not found")
        return order

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def apply_prodigi_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Apply a Prodigi CloudEvents callback to the matching order.

        Returns:
            Summary with ``order_id``, ``status``, ``shipments`` and ``issues``.

        Raises:
            ValidationError: Malformed event.
            NotFoundError: No order with the event's Prodigi id.
        """
        if event.get("specversion") != "1.0":
            raise ValidationError("Invalid CloudEvents version")
        event_type = event.get("type")
        info = parse_event_type(event_type) if isinstance(event_type, str) else None
        if info is None:
            raise ValidationError("Invalid event type format")
        prodigi_id = event.get("subject")
        if not isinstance(prodigi_id, str) or not prodigi_id.startswith("ord_"):
            raise ValidationError("Invalid order ID in subject")

        order_data = _as_dict(_as_dict(event.get("data")).get("order"))
        status_data = _as_dict(order_data.get("status"))
        now = to_iso(self.now())

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM orders WHERE prodigi_order_id = ?", (prodigi_id,)
            ).fetchone()
            if row is None:
                logger.error(f"Prodigi webhook for unknown order {prodigi_id}")
                raise NotFoundError("Order not found")
            order = self._load(conn, row["id"])

            metadata = {
                **order.metadata,
                "lastProdigiWebhookId": event.get("id"),
                "lastProdigiWebhookTime": event.get("time"),
                "lastProdigiWebhookType": event.get("type"),
                "prodigiStatus": status_data,
            }
            status = order.status
            if info["is_stage_change"]:
                status = map_stage_to_status(info["value"])
                if status is OrderStatus.COMPLETED:
                    metadata["completedAt"] = now
                elif status is OrderStatus.CANCELED:
                    metadata["cancelledAt"] = now
                logger.info(f"Order {order.id}: {order.status.value} -> {status.value}")

            shipments = []
            for shipment in _dict_items(order_data.get("shipments")):
                if not shipment.get("id"):
                    logger.warning(f"Order {order.id}: skipping shipment without an id")
                    continue
                shipments.append(shipment)
            if shipments:
                metadata["shipments"] = []
                for shipment in shipments:
                    carrier = _as_dict(shipment.get("carrier"))
                    tracking = _as_dict(shipment.get("tracking"))
                    items = _dict_items(shipment.get("items"))
                    metadata["shipments"].append(
                        {
                            "id": shipment.get("id"),
                            "carrier": carrier.get("name"),
                            "service": carrier.get("service"),
                            "trackingNumber": tracking.get("number"),
                            "trackingUrl": tracking.get("url"),
                            "dispatchDate": shipment.get("dispatchDate"),
                            "itemIds": [item.get("id") for item in items],
                        }
                    )
                    conn.execute(
                        """
                        INSERT INTO shipments
                            (order_id, prodigi_shipment_id, carrier, service,
                             tracking_number, tracking_url, shipped_at, items)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(prodigi_shipment_id) DO UPDATE SET
                            carrier = excluded.carrier,
                            service = excluded.service,
                            tracking_number = excluded.tracking_number,
                            tracking_url = excluded.tracking_url,
                            shipped_at = excluded.shipped_at,
                            items = excluded.items
                        """,
                        (
                            order.id,
                            shipment.get("id"),
                            carrier.get("name") or "Unknown",
                            carrier.get("service") or "Standard",
                            tracking.get("number"),
                            tracking.get("url"),
                            shipment.get("dispatchDate") or now,
                            dumps_json(items),
                        ),
                    )

            issues = _dict_items(status_data.get("issues"))
            if issues:
                metadata["issues"] = [{**issue, "timestamp": now} for issue in issues]
                for issue in issues:
                    code = str(issue.get("errorCode") or "")
                    if "Failed" in code or "Error" in code:
                        logger.error(f"Order {order.id} issue {code}: {issue.get('description')}")
                        conn.execute(
                            """
                            INSERT INTO order_processing_errors
                                (order_id, error, retry_count, last_attempt)
                            VALUES (?, ?, 0, ?)
                            """,
                            (order.id, f"{code}: {issue.get('description')}", now),
                        )

            conn.execute(
                "UPDATE orders SET status = ?, metadata = ?, updated_at = ? WHERE id = ?",
                (status.value, dumps_json(metadata), now, order.id),
            )

        return {
            "order_id": order.id,
            "status": status.value,
            "shipments": len(shipments),
            "issues": len(issues),
        }
