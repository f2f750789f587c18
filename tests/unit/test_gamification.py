"""Tests for promptly.core.gamification - achievements and tiers."""

from __future__ import annotations

from datetime import date

import pytest

from promptly.core.database import Database
from promptly.core.gamification import (
    ACHIEVEMENTS,
    UserStats,
    calculate_points,
    calculate_tier,
    check_achievements,
    held_achievements,
    load_user_stats,
    next_streak,
    tier_benefits,
    unlock_achievements,
)


class TestCalculateTier:
    """Tier thresholds on orders or spend, whichever is higher."""

    def test_new_user_is_bronze(self):
        assert calculate_tier(UserStats()) == "bronze"

    def test_orders_thresholds(self):
        assert calculate_tier(UserStats(orders_completed=3)) == "silver"
        assert calculate_tier(UserStats(orders_completed=5)) == "gold"
        assert calculate_tier(UserStats(orders_completed=10)) == "platinum"

    def test_spend_thresholds(self):
        assert calculate_tier(UserStats(total_spent=100)) == "silver"
        assert calculate_tier(UserStats(total_spent=200)) == "gold"
        assert calculate_tier(UserStats(total_spent=500)) == "platinum"

    def test_spend_can_outrank_orders(self):
        assert calculate_tier(UserStats(orders_completed=1, total_spent=250)) == "gold"


class TestCalculatePoints:
    def test_weighted_sum(self):
        stats = UserStats(
            designs_created=2,
            orders_completed=1,
            streak_days=3,
            referrals_complete=1,
            badges=["first_design_badge"],
        )
        assert calculate_points(stats) == 20 + 50 + 15 + 25 + 20


class TestCheckAchievements:
    """Test achievement unlocking."""

    def test_catalogue_size(self):
        assert len(ACHIEVEMENTS) == 8

    def test_first_design_unlocks(self):
        unlocked = check_achievements(UserStats(designs_created=1))
        assert [a.id for a in unlocked] == ["first_design"]

    def test_held_badges_are_skipped(self):
        stats = UserStats(designs_created=1, badges=["first_design_badge"])
        assert check_achievements(stats) == []

    def test_seasonal_requires_campaign_keyword(self):
        assert check_achievements(UserStats(), campaign_id="spring-sale") == []
        unlocked = check_achievements(UserStats(), campaign_id="Halloween-2026")
        assert [a.id for a in unlocked] == ["halloween_creator"]

    def test_multiple_unlocks_in_catalogue_order(self):
        stats = UserStats(designs_created=10, orders_completed=5)
        ids = [a.id for a in check_achievements(stats)]
        assert ids == ["first_design", "design_master", "first_purchase", "loyal_customer"]


class TestTierBenefits:
    def test_platinum_has_everything(self):
        benefits = tier_benefits("platinum")
        assert benefits["discount"] == 20
        assert benefits["priority_support"] is True

    def test_returns_copy(self):
        """Mutating the result must not change the shared table."""
        tier_benefits("bronze")["discount"] = 99
        assert tier_benefits("bronze")["discount"] == 5


class TestLoadUserStats:
    """Test building a snapshot from stored designs and orders."""

    def test_counts_designs_and_fulfilled_orders(self, db: Database):
        db.create_design("u1", "One")
        db.create_design("u1", "Two")
        db.create_design("u2", "Not mine")
        with db.transaction() as conn:
            for status, price in (("COMPLETED", 60.0), ("SHIPPED", 50.0), ("CANCELED", 99.0)):
                conn.execute(
                    """
                    INSERT INTO orders (user_id, status, total_price, created_at, updated_at)
                    VALUES ('u1', ?, ?, '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')
                    """,
                    (status, price),
                )

        stats = load_user_stats(db, "u1")
        assert stats.designs_created == 2
        assert stats.orders_completed == 2
        assert stats.total_spent == 110.0
        assert calculate_tier(stats) == "silver"

    def test_unknown_user(self, db: Database):
        stats = load_user_stats(db, "ghost")
        assert stats == UserStats()

    def test_streak_and_badges_loaded(self, db: Database):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO user_streaks (user_id, streak_days, last_active_date) VALUES ('u1', 4, '2026-03-15')"
            )
            unlocked = unlock_achievements(conn, "u1", "2026-03-15T12:00:00+00:00")

        stats = load_user_stats(db, "u1")
        assert [a.id for a in unlocked] == ["design_streak_3"]
        assert stats.streak_days == 4
        assert stats.badges == ["streak_3_badge"]
        assert [a.id for a in held_achievements(stats)] == ["design_streak_3"]
        assert check_achievements(stats) == []


class TestNextStreak:
    @pytest.mark.parametrize(
        ("streak", "last_active", "expected"),
        [
            (0, None, 1),
            (3, date(2026, 3, 14), 4),
            (3, date(2026, 3, 15), 3),
            (0, date(2026, 3, 15), 1),
            (5, date(2026, 3, 12), 1),
        ],
    )
    def test_rules(self, streak: int, last_active: date | None, expected: int):
        assert next_streak(streak, last_active, date(2026, 3, 15)) == expected
