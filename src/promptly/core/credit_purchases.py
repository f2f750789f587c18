"""Credit pack sales through Square hosted checkout.

A purchase starts as a ``PENDING`` row keyed by the Square order behind the
payment link.  Square later sends ``payment.updated``; the first event that
reports the payment ``COMPLETED`` flips the row to ``COMPLETED`` and adds the
pack's credits in the same transaction, so redelivered events add nothing.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from promptly.core.credits import CreditLedger
from promptly.core.database import Database, to_iso, utcnow
from promptly.core.errors import NotFoundError, ValidationError
from promptly.integrations.square import SquareClient

logger = logging.getLogger(__name__)

PURCHASE_TYPE = "credit_pack_purchase"


@dataclass(frozen=True)
class CreditPack:
    id: str
    name: str
    credits: float
    bonus_credits: float
    price: float
    currency: str
    is_popular: bool
    is_active: bool
    display_order: int
    description: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CreditPack":
        data = dict(row)
        data["is_popular"] = bool(data["is_popular"])
        data["is_active"] = bool(data["is_active"])
        return cls(**data)

    @property
    def total_credits(self) -> float:
        return self.credits + self.bonus_credits

    @property
    def price_per_credit(self) -> float:
        return round(self.price / self.total_credits, 3)

    @property
    def savings(self) -> int:
        """Bonus as a whole percentage of the base credits."""
        if self.bonus_credits <= 0 or self.credits <= 0:
            return 0
        return round(self.bonus_credits / self.credits * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "bonus_credits": self.bonus_credits,
            "price": self.price,
            "currency": self.currency,
            "is_popular": self.is_popular,
            "description": self.description,
            "total_credits": self.total_credits,
            "price_per_credit": self.price_per_credit,
            "savings": self.savings,
        }


DEFAULT_PACKS: tuple[CreditPack, ...] = (
    CreditPack("starter", "Starter Pack", 25, 0, 4.99, "USD", False, True, 1,
               "Perfect for trying out premium models"),
    CreditPack("creator", "Creator Pack", 100, 10, 14.99, "USD", True, True, 2,
               "Most popular - Best value for regular creators"),
    CreditPack("pro", "Pro Pack", 250, 50, 29.99, "USD", False, True, 3,
               "For power users and businesses"),
    CreditPack("enterprise", "Enterprise Pack", 500, 150, 49.99, "USD", False, True, 4,
               "Maximum value for high-volume users"),
)


@dataclass(frozen=True)
class CheckoutSession:
    purchase_id: int
    checkout_url: str
    payment_link_id: str
    square_order_id: str


class CreditPurchaseService:
    """Sell credit packs and settle them from Square webhooks.

    Args:
        db: Shared database.
        credits: Ledger the purchased credits are added to.
        square: Square client used to create payment links.
        location_id: Square location the links are created for.
        public_base_url: Storefront root for the post-payment redirect.
        now: Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        db: Database,
        credits: CreditLedger,
        square: SquareClient,
        *,
        location_id: str,
        public_base_url: str,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.credits = credits
        self.square = square
        self.location_id = location_id
        self.public_base_url = public_base_url.rstrip("/")
        self.now = now

    def seed_default_packs(self) -> int:
        """Insert the standard packs that are missing; returns how many were added."""
        added = 0
        with self.db.transaction() as conn:
            for pack in DEFAULT_PACKS:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO credit_packs
                        (id, name, credits, bonus_credits, price, currency,
                         is_popular, is_active, display_order, description)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pack.id,
                        pack.name,
                        pack.credits,
                        pack.bonus_credits,
                        pack.price,
                        pack.currency,
                        int(pack.is_popular),
                        int(pack.is_active),
                        pack.display_order,
                        pack.description,
                    ),
                )
                added += cursor.rowcount
        if added:
            logger.info(f"Seeded {added} credit packs")
        return added

    def list_packs(self) -> list[CreditPack]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM credit_packs WHERE is_active = 1 ORDER BY display_order, id"
            ).fetchall()
        return [CreditPack.from_row(row) for row in rows]

    def get_pack(self, pack_id: str) -> CreditPack:
        """Return an active pack.

        Raises:
            NotFoundError: Unknown or inactive pack.
        """
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM credit_packs WHERE id = ?", (pack_id,)).fetchone()
        if row is None or not row["is_active"]:
            raise NotFoundError("Credit pack not found or inactive")
        return CreditPack.from_row(row)

    def start_checkout(self, user_id: str, pack_id: str) -> CheckoutSession:
        """Create a Square payment link for *pack_id* and record the pending purchase.

        Raises:
            NotFoundError: Unknown or inactive pack.
            ValidationError: No Square location is configured.
            PaymentError: Square refused to create the link.
        """
        if not self.location_id:
            raise ValidationError("Credit checkout is not configured")
        pack = self.get_pack(pack_id)
        with self.db.connection() as conn:
            user = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()

        link = self.square.create_payment_link(
            location_id=self.location_id,
            name=pack.name,
            amount=pack.price,
            currency=pack.currency,
            note=(
                f"{pack.total_credits:g} AI generation credits "
                f"({pack.credits:g} + {pack.bonus_credits:g} bonus)"
            ),
            redirect_url=f"{self.public_base_url}/checkout/credits/success",
            metadata={
                "userId": user_id,
                "packId": pack.id,
                "credits": f"{pack.total_credits:g}",
                "type": PURCHASE_TYPE,
            },
            buyer_email=user["email"] if user else None,
        )

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO credit_purchases
                    (user_id, pack_id, credits, price, currency, square_order_id,
                     payment_link_id, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'PENDING', ?)
                """,
                (
                    user_id,
                    pack.id,
                    pack.total_credits,
                    pack.price,
                    pack.currency,
                    link.order_id,
                    link.id,
                    to_iso(self.now()),
                ),
            )
            purchase_id = int(cursor.lastrowid)

        logger.info(f"Checkout {purchase_id} started for {user_id} ({pack.id})")
        return CheckoutSession(
            purchase_id=purchase_id,
            checkout_url=link.url,
            payment_link_id=link.id,
            square_order_id=link.order_id,
        )

    def apply_square_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Settle a purchase from a Square webhook event.

        Only ``payment.updated`` with a ``COMPLETED`` payment changes state.
        Events for unknown orders and repeated deliveries are acknowledged
        without effect.

        Returns:
            ``{"handled": bool, ...}`` describing what happened.
        """
        event_type = event.get("type")
        if event_type != "payment.updated":
            logger.info(f"Ignoring Square event {event.get('event_id')} ({event_type})")
            return {"handled": False, "reason": "ignored event type"}

        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        payment = obj.get("payment") if isinstance(obj, dict) else None
        if not isinstance(payment, dict):
            logger.warning(f"Square event {event.get('event_id')} has no payment")
            return {"handled": False, "reason": "no payment"}
        if payment.get("status") != "COMPLETED":
            return {"handled": False, "reason": "payment not completed"}

        square_order_id = payment.get("order_id")
        with self.db.transaction() as conn:
            purchase = conn.execute(
                "SELECT * FROM credit_purchases WHERE square_order_id = ?", (square_order_id,)
            ).fetchone()
            if purchase is None:
                logger.warning(f"No credit purchase for Square order {square_order_id}")
                return {"handled": False, "reason": "unknown order"}

            cursor = conn.execute(
                """
                UPDATE credit_purchases
                SET status = 'COMPLETED', square_payment_id = ?, completed_at = ?
                WHERE id = ? AND status = 'PENDING'
                """,
                (payment.get("id"), to_iso(self.now()), purchase["id"]),
            )
            if cursor.rowcount == 0:
                return {"handled": False, "reason": "already processed"}

            balance = self.credits.add_credits(
                purchase["user_id"],
                purchase["credits"],
                "PURCHASE",
                f"Purchased {purchase['pack_id']} pack ({purchase['credits']:g} credits)",
                {
                    "pack_id": purchase["pack_id"],
                    "square_payment_id": payment.get("id"),
                    "square_order_id": square_order_id,
                    "amount_paid": (payment.get("amount_money") or {}).get("amount"),
                },
                conn=conn,
            )

        logger.info(f"Purchase {purchase['id']} completed: +{purchase['credits']} credits")
        return {
            "handled": True,
            "purchase_id": purchase["id"],
            "credits_added": purchase["credits"],
            "new_balance": balance,
        }
