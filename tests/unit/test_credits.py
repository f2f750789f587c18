"""Tests for promptly.core.credits - the generation credit ledger.

Tests cover:
- Model cost lookup.
- Account creation and calendar-month resets.
- Atomic deductions that never overdraw.
- Grants, the T-shirt bonus and transaction bookkeeping.
- The rolling guest allowance.
- Generation records and credit stats.
- The authorize/settle generation flow for users and guests.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from promptly.core.credits import CreditLedger, credit_cost
from promptly.core.database import Database
from promptly.core.errors import (
    GuestLimitError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)


def _transactions(db: Database, user_id: str) -> list[dict]:
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT amount, balance, type FROM credit_transactions WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
    return [dict(row) for row in rows]


class TestCreditCost:
    def test_known_models(self):
        assert credit_cost("nano-banana") == 0.5
        assert credit_cost("nano-banana-pro") == 2

    def test_unknown_model_costs_one(self):
        assert credit_cost("some-new-model") == 1.0


class TestAccounts:
    """Test account creation and monthly resets."""

    def test_first_access_creates_allowance(self, credits: CreditLedger, db: Database):
        account = credits.get_user_credits("u1")
        assert account.credits == 50
        assert account.welcome_credits == 50
        assert account.lifetime_credits == 50
        assert _transactions(db, "u1") == [{"amount": 50, "balance": 50, "type": "MONTHLY_RESET"}]

    def test_same_month_no_reset(self, credits: CreditLedger, db: Database, clock):
        credits.get_user_credits("u1")
        clock.advance(days=5)
        credits.get_user_credits("u1")
        assert len(_transactions(db, "u1")) == 1

    def test_new_month_resets_balance(self, credits: CreditLedger, clock):
        credits.get_user_credits("u1")
        credits.deduct_credits("u1", "nano-banana-pro", "test")
        clock.advance(days=20)  # 15 March -> 4 April

        account = credits.get_user_credits("u1")
        assert account.credits == 50
        assert account.monthly_credits_used == 0
        assert account.lifetime_credits == 100

    def test_reset_overwrites_purchased_credits(self, credits: CreditLedger, clock):
        """The reset sets the balance to the allowance; it does not add to it."""
        credits.add_credits("u1", 30, "PURCHASE", "pack")
        clock.advance(days=31)
        assert credits.get_user_credits("u1").credits == 50

    def test_explicit_reset(self, credits: CreditLedger):
        credits.deduct_credits("u1", "flux-dev", "test")
        account = credits.reset_monthly_credits("u1")
        assert account.credits == 50

    def test_explicit_reset_unknown_user(self, credits: CreditLedger):
        with pytest.raises(NotFoundError):
            credits.reset_monthly_credits("ghost")


class TestDeductions:
    """Test deduct_credits."""

    def test_deduct_records_negative_transaction(self, credits: CreditLedger, db: Database):
        result = credits.deduct_credits("u1", "nano-banana", "Image generation", {"prompt": "cat"})
        assert result.success is True
        assert result.deducted == 0.5
        assert result.new_balance == 49.5
        assert _transactions(db, "u1")[-1] == {
            "amount": -0.5,
            "balance": 49.5,
            "type": "GENERATION_USED",
        }

    def test_insufficient_balance(self, db: Database, clock):
        ledger = CreditLedger(db, monthly_credits=1, now=clock)
        assert ledger.deduct_credits("u1", "flux-dev", "one").success is True

        result = ledger.deduct_credits("u1", "flux-dev", "two")
        assert result.success is False
        assert result.deducted == 0
        assert result.new_balance == 0
        assert ledger.get_user_credits("u1").credits == 0

    def test_has_enough_credits(self, db: Database, clock):
        ledger = CreditLedger(db, monthly_credits=1, now=clock)
        check = ledger.has_enough_credits("u1", "nano-banana-pro")
        assert check.has_credits is False
        assert check.required == 2
        assert check.current_balance == 1


class TestGrants:
    """Test add_credits and grant_tshirt_bonus."""

    def test_add_credits(self, credits: CreditLedger, db: Database):
        balance = credits.add_credits("u1", 25, "PROMO", "Launch promo")
        assert balance == 75
        assert _transactions(db, "u1")[-1]["type"] == "PROMO"

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected(self, credits: CreditLedger, amount: float):
        with pytest.raises(ValidationError):
            credits.add_credits("u1", amount, "PROMO", "nope")

    def test_tshirt_bonus_per_shirt(self, credits: CreditLedger):
        granted, balance = credits.grant_tshirt_bonus("u1", order_id=42, tshirt_count=3)
        assert granted == 30
        assert balance == 80

    def test_tshirt_bonus_requires_a_shirt(self, credits: CreditLedger):
        with pytest.raises(ValidationError):
            credits.grant_tshirt_bonus("u1", order_id=42, tshirt_count=0)


class TestGuestAllowance:
    """Test the rolling 24-hour guest allowance."""

    def test_fresh_session(self, credits: CreditLedger):
        allowance = credits.check_guest_limit("s1")
        assert allowance.allowed is True
        assert allowance.remaining == 2

    def test_limit_reached(self, credits: CreditLedger):
        for _ in range(3):
            credits.record_guest_generation("s1", "127.0.0.1")
        allowance = credits.check_guest_limit("s1")
        assert allowance.allowed is False
        assert allowance.remaining == 0

    def test_window_expires(self, credits: CreditLedger, clock):
        for _ in range(3):
            credits.record_guest_generation("s1")
        clock.advance(hours=25)
        assert credits.check_guest_limit("s1").allowed is True

        credits.record_guest_generation("s1")
        assert credits.check_guest_limit("s1").remaining == 1

    def test_resets_at_follows_last_generation(self, credits: CreditLedger, clock):
        credits.record_guest_generation("s1")
        assert credits.check_guest_limit("s1").resets_at == clock() + timedelta(hours=24)


class TestStats:
    """Test generation records and credit stats."""

    def test_generation_needs_an_owner(self, credits: CreditLedger):
        with pytest.raises(ValidationError):
            credits.record_image_generation(
                prompt="cat", ai_model="flux-dev", credits_used=1, status="COMPLETED"
            )

    def test_credit_stats(self, credits: CreditLedger):
        credits.deduct_credits("u1", "flux-dev", "gen")
        credits.record_image_generation(
            prompt="a cat in a hat",
            ai_model="flux-dev",
            credits_used=1,
            status="COMPLETED",
            user_id="u1",
        )

        stats = credits.get_credit_stats("u1")
        assert stats["balance"] == 49
        assert stats["lifetime_spent"] == 1
        assert stats["total_generations"] == 1
        assert stats["welcome_credits_remaining"] == 50
        assert [t["type"] for t in stats["recent_transactions"]] == [
            "GENERATION_USED",
            "MONTHLY_RESET",
        ]


def _generations(db: Database) -> list[dict]:
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT user_id, session_id, ai_model, credits_used, status FROM image_generations ORDER BY id"
        ).fetchall()
    return [dict(row) for row in rows]


class TestGenerationFlow:
    """Test authorize_generation and settle_generation."""

    def test_authorize_user(self, credits: CreditLedger):
        quote = credits.authorize_generation("nano-banana-pro", user_id="u1")
        assert quote.cost == 2
        assert quote.balance == 50

    def test_authorize_user_insufficient(self, db: Database, clock):
        ledger = CreditLedger(db, monthly_credits=1, now=clock)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.authorize_generation("nano-banana-pro", user_id="u1")
        assert (exc_info.value.balance, exc_info.value.required) == (1, 2)

    def test_authorize_guest(self, credits: CreditLedger):
        quote = credits.authorize_generation("flux-dev", session_id="s1")
        assert quote.cost == 0
        assert quote.guest_remaining == 2

    def test_authorize_needs_an_owner(self, credits: CreditLedger):
        with pytest.raises(ValidationError):
            credits.authorize_generation("flux-dev")

    def test_completed_user_generation_is_charged(self, credits: CreditLedger, db: Database):
        receipt = credits.settle_generation(
            prompt="a cat in a hat", model_name="nano-banana", status="COMPLETED", user_id="u1"
        )

        assert (receipt.credits_used, receipt.new_balance) == (0.5, 49.5)
        assert _generations(db) == [
            {
                "user_id": "u1",
                "session_id": None,
                "ai_model": "nano-banana",
                "credits_used": 0.5,
                "status": "COMPLETED",
            }
        ]
        assert _transactions(db, "u1")[-1] == {"amount": -0.5, "balance": 49.5, "type": "GENERATION_USED"}

    def test_failed_generation_is_free(self, credits: CreditLedger, db: Database):
        receipt = credits.settle_generation(
            prompt="a cat",
            model_name="flux-dev",
            status="FAILED",
            user_id="u1",
            error_message="model timeout",
        )
        assert receipt.credits_used == 0
        assert credits.get_user_credits("u1").credits == 50
        assert _generations(db)[0]["status"] == "FAILED"

    def test_unaffordable_generation_records_nothing(self, db: Database, clock):
        ledger = CreditLedger(db, monthly_credits=1, now=clock)
        with pytest.raises(InsufficientCreditsError):
            ledger.settle_generation(
                prompt="a cat", model_name="nano-banana-pro", status="COMPLETED", user_id="u1"
            )
        assert _generations(db) == []
        assert ledger.get_user_credits("u1").credits == 1

    def test_guest_generations_consume_allowance(self, credits: CreditLedger, db: Database):
        remaining = [
            credits.settle_generation(
                prompt="a cat", model_name="flux-dev", status="COMPLETED", session_id="s1"
            ).guest_remaining
            for _ in range(3)
        ]
        assert remaining == [2, 1, 0]
        assert credits.check_guest_limit("s1").allowed is False

        with pytest.raises(GuestLimitError) as exc_info:
            credits.settle_generation(
                prompt="a cat", model_name="flux-dev", status="COMPLETED", session_id="s1"
            )
        assert exc_info.value.resets_at is not None
        assert len(_generations(db)) == 3
        with pytest.raises(GuestLimitError):
            credits.authorize_generation("flux-dev", session_id="s1")

    def test_failed_guest_generation_keeps_allowance(self, credits: CreditLedger):
        credits.settle_generation(
            prompt="a cat", model_name="flux-dev", status="FAILED", session_id="s1"
        )
        assert credits.check_guest_limit("s1").remaining == 2

    def test_settle_needs_an_owner(self, credits: CreditLedger):
        with pytest.raises(ValidationError):
            credits.settle_generation(prompt="a cat", model_name="flux-dev", status="COMPLETED")

    def test_add_credits_joins_transaction(self, credits: CreditLedger, db: Database):
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                credits.add_credits("u1", 10, "PROMO", "rolled back", conn=conn)
                raise RuntimeError("abort")
        assert credits.get_user_credits("u1").credits == 50
