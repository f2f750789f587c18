"""Credit ledger for AI image generation.

Signed-in users hold a credit balance that is topped back up to the monthly
allowance at the start of every calendar month.  Each generation costs a
model-specific amount (:data:`MODEL_CREDIT_COSTS`).  Anonymous visitors get a
small rolling allowance per session instead (:meth:`CreditLedger.check_guest_limit`).

Every balance change writes a ``credit_transactions`` row carrying the
resulting balance, so the history can be replayed to audit the balance.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from promptly.core.database import (
    Database,
    dumps_json,
    loads_json,
    parse_iso,
    to_iso,
    utcnow,
)
from promptly.core.errors import (
    GuestLimitError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MODEL_CREDIT_COSTS: dict[str, float] = {
    "flux-dev": 1,
    "lora-normal": 1,
    "lora-context": 1,
    "nano-banana": 0.5,
    "nano-banana-pro": 2,
    "gemini-flash": 1,
}
DEFAULT_CREDIT_COST = 1.0

GUEST_WINDOW = timedelta(hours=24)

CreditTransactionType = Literal[
    "MONTHLY_RESET", "GENERATION_USED", "PURCHASE", "PROMO", "TSHIRT_BONUS", "REFUND", "ADMIN_GRANT"
]
GenerationStatus = Literal["PENDING", "COMPLETED", "FAILED"]


def credit_cost(model_name: str) -> float:
    """Return the credit cost of one generation with *model_name*."""
    return MODEL_CREDIT_COSTS.get(model_name, DEFAULT_CREDIT_COST)


@dataclass(frozen=True)
class UserCredits:
    user_id: str
    credits: float
    monthly_credits: float
    monthly_credits_used: float
    last_monthly_reset: datetime
    welcome_credits: float
    welcome_credits_used: float
    lifetime_credits: float
    lifetime_spent: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UserCredits":
        data = dict(row)
        data["last_monthly_reset"] = parse_iso(data["last_monthly_reset"])
        return cls(**data)


@dataclass(frozen=True)
class CreditCheck:
    has_credits: bool
    current_balance: float
    required: float


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    new_balance: float
    deducted: float


@dataclass(frozen=True)
class GuestAllowance:
    allowed: bool
    remaining: int
    resets_at: datetime | None


@dataclass(frozen=True)
class GenerationQuote:
    """Outcome of a generation pre-check.

    ``cost`` is zero for guests; ``balance`` is only set for users and
    ``guest_remaining``/``resets_at`` only for guests.
    """

    model: str
    cost: float
    balance: float | None = None
    guest_remaining: int | None = None
    resets_at: datetime | None = None


@dataclass(frozen=True)
class GenerationReceipt:
    generation_id: int
    status: str
    credits_used: float
    new_balance: float | None = None
    guest_remaining: int | None = None


class CreditLedger:
    """Balance bookkeeping for credits.

    Args:
        db: Shared database.
        monthly_credits: Allowance restored each calendar month.
        welcome_credits: Welcome bonus recorded on the credits row.
        tshirt_purchase_bonus: Credits per T-shirt purchased.
        guest_daily_limit: Anonymous generations per rolling 24 hours.
        now: Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        db: Database,
        *,
        monthly_credits: float = 50,
        welcome_credits: float = 50,
        tshirt_purchase_bonus: float = 10,
        guest_daily_limit: int = 3,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.monthly_credits = monthly_credits
        self.welcome_credits = welcome_credits
        self.tshirt_purchase_bonus = tshirt_purchase_bonus
        self.guest_daily_limit = guest_daily_limit
        self.now = now

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _record(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: float,
        balance: float,
        type_: CreditTransactionType,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO credit_transactions
                (user_id, amount, balance, type, reason, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, amount, balance, type_, reason, dumps_json(metadata), to_iso(self.now())),
        )

    def _fetch(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM user_credits WHERE user_id = ?", (user_id,)).fetchone()

    def _reset(self, conn: sqlite3.Connection, row: sqlite3.Row) -> None:
        now = self.now()
        conn.execute(
            """
            UPDATE user_credits SET
                credits = ?,
                monthly_credits = ?,
                monthly_credits_used = 0,
                last_monthly_reset = ?,
                lifetime_credits = lifetime_credits + ?
            WHERE user_id = ?
            """,
            (
                self.monthly_credits,
                self.monthly_credits,
                to_iso(now),
                self.monthly_credits,
                row["user_id"],
            ),
        )
        self._record(
            conn,
            row["user_id"],
            self.monthly_credits,
            self.monthly_credits,
            "MONTHLY_RESET",
            f"Monthly credit reset for {now.strftime('%B %Y')}",
        )
        logger.info(f"Monthly credits reset for {row['user_id']}")

    def _ensure(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        """Create the row on first use and apply any due monthly reset."""
        row = self._fetch(conn, user_id)
        if row is None:
            conn.execute(
                """
                INSERT INTO user_credits
                    (user_id, credits, monthly_credits, monthly_credits_used,
                     last_monthly_reset, welcome_credits, welcome_credits_used,
                     lifetime_credits, lifetime_spent)
                VALUES (?, ?, ?, 0, ?, ?, 0, ?, 0)
                """,
                (
                    user_id,
                    self.monthly_credits,
                    self.monthly_credits,
                    to_iso(self.now()),
                    self.welcome_credits,
                    self.monthly_credits,
                ),
            )
            self._record(
                conn,
                user_id,
                self.monthly_credits,
                self.monthly_credits,
                "MONTHLY_RESET",
                "Initial monthly credit allocation",
            )
            logger.info(f"Created credits account for {user_id}")
            return self._fetch(conn, user_id)

        last_reset = parse_iso(row["last_monthly_reset"])
        now = self.now()
        if (now.year, now.month) != (last_reset.year, last_reset.month):
            self._reset(conn, row)
            return self._fetch(conn, user_id)
        return row

    # ------------------------------------------------------------------
    # Balance operations
    # ------------------------------------------------------------------

    def get_user_credits(self, user_id: str) -> UserCredits:
        """Return the user's credits, creating or resetting them as needed."""
        with self.db.transaction() as conn:
            return UserCredits.from_row(self._ensure(conn, user_id))

    def reset_monthly_credits(self, user_id: str) -> UserCredits:
        """Restore the monthly allowance immediately.

        Raises:
            NotFoundError: The user has no credits account yet.
        """
        with self.db.transaction() as conn:
            row = self._fetch(conn, user_id)
            if row is None:
                raise NotFoundError("User credits not found")
            self._reset(conn, row)
            return UserCredits.from_row(self._fetch(conn, user_id))

    def has_enough_credits(self, user_id: str, model_name: str) -> CreditCheck:
        credits = self.get_user_credits(user_id)
        required = credit_cost(model_name)
        return CreditCheck(
            has_credits=credits.credits >= required,
            current_balance=credits.credits,
            required=required,
        )

    def deduct_credits(
        self,
        user_id: str,
        model_name: str,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeductionResult:
        """Charge one generation with *model_name* to the user.

        The balance check and the debit are a single conditional UPDATE, so
        the balance cannot go negative.

        Returns:
            ``success=False`` with the unchanged balance when the user cannot
            afford the generation.
        """
        with self.db.transaction() as conn:
            result = self._deduct(conn, user_id, model_name, reason, metadata)
        if result.success:
            logger.info(f"Deducted {result.deducted} credits from {user_id} ({model_name})")
        return result

    def _deduct(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        model_name: str,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> DeductionResult:
        cost = credit_cost(model_name)
        self._ensure(conn, user_id)
        cursor = conn.execute(
            """
            UPDATE user_credits SET
                credits = credits - ?,
                monthly_credits_used = monthly_credits_used + ?,
                lifetime_spent = lifetime_spent + ?
            WHERE user_id = ? AND credits >= ?
            """,
            (cost, cost, cost, user_id, cost),
        )
        balance = self._fetch(conn, user_id)["credits"]
        if cursor.rowcount == 0:
            logger.warning(f"Insufficient credits for {user_id}: {balance} < {cost}")
            return DeductionResult(success=False, new_balance=balance, deducted=0)

        self._record(conn, user_id, -cost, balance, "GENERATION_USED", reason, metadata)
        return DeductionResult(success=True, new_balance=balance, deducted=cost)

    def add_credits(
        self,
        user_id: str,
        amount: float,
        type_: CreditTransactionType,
        reason: str,
        metadata: dict[str, Any] | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> float:
        """Credit the user's balance and return the new balance.

        Joins the caller's transaction when *conn* is given.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive")

        if conn is None:
            with self.db.transaction() as own_conn:
                balance = self._add(own_conn, user_id, amount, type_, reason, metadata)
        else:
            balance = self._add(conn, user_id, amount, type_, reason, metadata)

        logger.info(f"Added {amount} credits to {user_id} ({type_})")
        return balance

    def _add(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: float,
        type_: CreditTransactionType,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> float:
        self._ensure(conn, user_id)
        conn.execute(
            """
            UPDATE user_credits SET
                credits = credits + ?,
                lifetime_credits = lifetime_credits + ?
            WHERE user_id = ?
            """,
            (amount, amount, user_id),
        )
        balance = self._fetch(conn, user_id)["credits"]
        self._record(conn, user_id, amount, balance, type_, reason, metadata)
        return balance

    def grant_tshirt_bonus(self, user_id: str, order_id: int, tshirt_count: int = 1) -> tuple[float, float]:
        """Grant the per-T-shirt purchase bonus.

        Returns:
            Tuple of ``(credits_granted, new_balance)``.
        """
        if tshirt_count < 1:
            raise ValidationError("tshirt_count must be at least 1")
        granted = self.tshirt_purchase_bonus * tshirt_count
        plural = "s" if tshirt_count > 1 else ""
        balance = self.add_credits(
            user_id,
            granted,
            "TSHIRT_BONUS",
            f"Bonus credits for purchasing {tshirt_count} T-shirt{plural}",
            {
                "order_id": order_id,
                "tshirt_count": tshirt_count,
                "credits_per_tshirt": self.tshirt_purchase_bonus,
            },
        )
        return granted, balance

    # ------------------------------------------------------------------
    # Guests
    # ------------------------------------------------------------------

    def _guest_allowance(self, row: sqlite3.Row | None, now: datetime) -> GuestAllowance:
        if row is None or parse_iso(row["last_gen_at"]) < now - GUEST_WINDOW:
            return GuestAllowance(
                allowed=self.guest_daily_limit > 0,
                remaining=max(self.guest_daily_limit - 1, 0),
                resets_at=now + GUEST_WINDOW,
            )

        resets_at = parse_iso(row["last_gen_at"]) + GUEST_WINDOW
        if row["count"] >= self.guest_daily_limit:
            return GuestAllowance(allowed=False, remaining=0, resets_at=resets_at)
        return GuestAllowance(
            allowed=True,
            remaining=self.guest_daily_limit - row["count"] - 1,
            resets_at=resets_at,
        )

    def check_guest_limit(self, session_id: str) -> GuestAllowance:
        """Report whether an anonymous session may generate another image.

        ``remaining`` counts the generations left *after* the one about to
        be made.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT count, last_gen_at FROM guest_generations WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return self._guest_allowance(row, self.now())

    def _consume_guest(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        ip_address: str | None,
        *,
        enforce: bool,
    ) -> GuestAllowance:
        now = self.now()
        row = conn.execute(
            "SELECT count, last_gen_at FROM guest_generations WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        allowance = self._guest_allowance(row, now)
        if enforce and not allowance.allowed:
            raise GuestLimitError(
                "Daily guest generation limit reached", resets_at=allowance.resets_at
            )

        if row is None:
            conn.execute(
                """
                INSERT INTO guest_generations (session_id, ip_address, count, last_gen_at)
                VALUES (?, ?, 1, ?)
                """,
                (session_id, ip_address, to_iso(now)),
            )
        else:
            expired = parse_iso(row["last_gen_at"]) < now - GUEST_WINDOW
            conn.execute(
                """
                UPDATE guest_generations
                SET count = ?, last_gen_at = ?, ip_address = ?
                WHERE session_id = ?
                """,
                (1 if expired else row["count"] + 1, to_iso(now), ip_address, session_id),
            )
        return allowance

    def record_guest_generation(self, session_id: str, ip_address: str | None = None) -> None:
        """Count one generation against the session without enforcing the limit."""
        with self.db.transaction() as conn:
            self._consume_guest(conn, session_id, ip_address, enforce=False)

    # ------------------------------------------------------------------
    # Generations and stats
    # ------------------------------------------------------------------

    def authorize_generation(
        self,
        model_name: str,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> GenerationQuote:
        """Check that a generation may start before any model is called.

        Signed-in users are checked against their balance, anonymous
        sessions against the rolling guest allowance.

        Raises:
            InsufficientCreditsError: The user cannot afford *model_name*.
            GuestLimitError: The session has used its allowance.
            ValidationError: Neither a user nor a session was given.
        """
        cost = credit_cost(model_name)
        if user_id is not None:
            check = self.has_enough_credits(user_id, model_name)
            if not check.has_credits:
                raise InsufficientCreditsError(
                    "Insufficient credits", balance=check.current_balance, required=cost
                )
            return GenerationQuote(model=model_name, cost=cost, balance=check.current_balance)

        if session_id is None:
            raise ValidationError("A generation needs a user_id or a session_id")
        allowance = self.check_guest_limit(session_id)
        if not allowance.allowed:
            raise GuestLimitError(
                "Daily guest generation limit reached", resets_at=allowance.resets_at
            )
        return GenerationQuote(
            model=model_name,
            cost=0,
            guest_remaining=allowance.remaining,
            resets_at=allowance.resets_at,
        )

    def settle_generation(
        self,
        *,
        prompt: str,
        model_name: str,
        status: GenerationStatus,
        user_id: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        image_url: str | None = None,
        print_ready_url: str | None = None,
        error_message: str | None = None,
        generation_time_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GenerationReceipt:
        """Charge for a finished generation and record it.

        A completed generation debits the user's balance or consumes one
        guest allowance.  A failed one is recorded with zero credits and
        charges nothing.  The charge and the ``image_generations`` row share
        one transaction.

        Raises:
            InsufficientCreditsError: The balance dropped below the cost
                since :meth:`authorize_generation`.
            GuestLimitError: The session's allowance ran out meanwhile.
            ValidationError: Neither a user nor a session was given.
        """
        if user_id is None and session_id is None:
            raise ValidationError("A generation needs a user_id or a session_id")

        charged: float = 0
        balance: float | None = None
        remaining: int | None = None
        with self.db.transaction() as conn:
            if status == "COMPLETED" and user_id is not None:
                result = self._deduct(
                    conn,
                    user_id,
                    model_name,
                    f"Image generation with {model_name}",
                    {"prompt": prompt[:100]},
                )
                if not result.success:
                    raise InsufficientCreditsError(
                        "Insufficient credits",
                        balance=result.new_balance,
                        required=credit_cost(model_name),
                    )
                charged, balance = result.deducted, result.new_balance
            elif status == "COMPLETED":
                remaining = self._consume_guest(conn, session_id, ip_address, enforce=True).remaining

            generation_id = self._insert_generation(
                conn,
                prompt=prompt,
                ai_model=model_name,
                credits_used=charged,
                status=status,
                user_id=user_id,
                session_id=session_id,
                image_url=image_url,
                print_ready_url=print_ready_url,
                error_message=error_message,
                generation_time_ms=generation_time_ms,
                metadata=metadata,
            )

        logger.info(f"Generation {generation_id} {status} ({model_name}, {charged} credits)")
        return GenerationReceipt(
            generation_id=generation_id,
            status=status,
            credits_used=charged,
            new_balance=balance,
            guest_remaining=remaining,
        )

    def _insert_generation(
        self,
        conn: sqlite3.Connection,
        *,
        prompt: str,
        ai_model: str,
        credits_used: float,
        status: GenerationStatus,
        user_id: str | None,
        session_id: str | None,
        image_url: str | None,
        print_ready_url: str | None,
        error_message: str | None,
        generation_time_ms: int | None,
        metadata: dict[str, Any] | None,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO image_generations
                (user_id, session_id, prompt, ai_model, credits_used, status,
                 image_url, print_ready_url, error_message, generation_time_ms,
                 metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                session_id,
                prompt,
                ai_model,
                credits_used,
                status,
                image_url,
                print_ready_url,
                error_message,
                generation_time_ms,
                dumps_json(metadata),
                to_iso(self.now()),
            ),
        )
        return int(cursor.lastrowid)

    def record_image_generation(
        self,
        *,
        prompt: str,
        ai_model: str,
        credits_used: float,
        status: GenerationStatus,
        user_id: str | None = None,
        session_id: str | None = None,
        image_url: str | None = None,
        print_ready_url: str | None = None,
        error_message: str | None = None,
        generation_time_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Insert a generation row without charging for it."""
        if user_id is None and session_id is None:
            raise ValidationError("A generation needs a user_id or a session_id")
        with self.db.transaction() as conn:
            return self._insert_generation(
                conn,
                prompt=prompt,
                ai_model=ai_model,
                credits_used=credits_used,
                status=status,
                user_id=user_id,
                session_id=session_id,
                image_url=image_url,
                print_ready_url=print_ready_url,
                error_message=error_message,
                generation_time_ms=generation_time_ms,
                metadata=metadata,
            )


    def get_credit_stats(self, user_id: str) -> dict[str, Any]:
        """Return balance, lifetime totals and the ten latest transactions."""
        credits = self.get_user_credits(user_id)
        with self.db.connection() as conn:
            transactions = conn.execute(
                """
                SELECT amount, balance, type, reason, metadata, created_at
                FROM credit_transactions WHERE user_id = ?
                ORDER BY id DESC LIMIT 10
                """,
                (user_id,),
            ).fetchall()
            total_generations = conn.execute(
                "SELECT COUNT(*) FROM image_generations WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

        return {
            "balance": credits.credits,
            "welcome_credits_remaining": credits.welcome_credits - credits.welcome_credits_used,
            "lifetime_credits": credits.lifetime_credits,
            "lifetime_spent": credits.lifetime_spent,
            "total_generations": total_generations,
            "recent_transactions": [
                {**dict(row), "metadata": loads_json(row["metadata"])} for row in transactions
            ],
        }
