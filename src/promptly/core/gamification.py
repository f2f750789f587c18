"""Achievement catalogue and loyalty tiers.

The rules are pure functions of a :class:`UserStats` snapshot, so they can
be evaluated for previews without touching the database.  :func:`load_user_stats`
builds the snapshot for a stored user and :func:`unlock_achievements` records
newly earned badges, which later snapshots carry in ``badges``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Literal

from promptly.core.database import Database

logger = logging.getLogger(__name__)

# point_history action written when a referred purchase completes.
REFERRAL_ACTION = "referral_completed"

Tier = Literal["bronze", "silver", "gold", "platinum"]
RequirementType = Literal[
    "designs_created", "orders_completed", "streak_days", "total_spent", "referrals", "seasonal"
]


@dataclass(frozen=True)
class Badge:
    id: str
    name: str
    description: str
    icon: str
    category: Literal["design", "purchase", "social", "seasonal", "achievement"]


@dataclass(frozen=True)
class Achievement:
    id: str
    name: str
    description: str
    requirement_type: RequirementType
    requirement_value: int
    reward_type: Literal["discount", "early_access", "exclusive_theme", "free_design"]
    reward_value: str
    badge: Badge


@dataclass
class UserStats:
    designs_created: int = 0
    orders_completed: int = 0
    streak_days: int = 0
    total_spent: float = 0.0
    referrals_complete: int = 0
    badges: list[str] = field(default_factory=list)


ACHIEVEMENTS: list[Achievement] = [
    Achievement(
        "first_design", "First Creation", "Created your first design",
        "designs_created", 1, "discount", "10% off next order",
        Badge("first_design_badge", "First Creation", "Welcome to the design world!", "🎨", "design"),
    ),
    Achievement(
        "design_streak_3", "Design Streak", "Designed for 3 days in a row",
        "streak_days", 3, "discount", "15% off next order",
        Badge("streak_3_badge", "3-Day Streak", "Consistency is key!", "🔥", "achievement"),
    ),
    Achievement(
        "design_master", "Design Master", "Created 10 designs",
        "designs_created", 10, "exclusive_theme", "Master Collection",
        Badge("master_badge", "Design Master", "A true creative force!", "👑", "design"),
    ),
    Achievement(
        "first_purchase", "First Order", "Completed your first order",
        "orders_completed", 1, "early_access", "Next seasonal campaign",
        Badge("first_purchase_badge", "First Purchase", "Welcome to the family!", "🛍️", "purchase"),
    ),
    Achievement(
        "loyal_customer", "Loyal Customer", "Completed 5 orders",
        "orders_completed", 5, "discount", "20% off all future orders",
        Badge("loyal_badge", "Loyal Customer", "A valued member of our community!", "💎", "purchase"),
    ),
    Achievement(
        "halloween_creator", "Halloween Creator", "Created a Halloween design",
        "seasonal", 1, "exclusive_theme", "Spooky Special Collection",
        Badge("halloween_badge", "Halloween Creator", "Spooky season specialist!", "🎃", "seasonal"),
    ),
    Achievement(
        "christmas_designer", "Christmas Designer", "Created a Christmas design",
        "seasonal", 1, "free_design", "Free holiday design template",
        Badge("christmas_badge", "Christmas Designer", "Spreading holiday cheer!", "🎄", "seasonal"),
    ),
    Achievement(
        "social_sharer", "Social Sharer", "Shared your design on social media",
        "referrals", 1, "discount", "10% off + friend gets 10% off",
        Badge("sharer_badge", "Social Sharer", "Spreading the creativity!", "📱", "social"),
    ),
]

# Seasonal achievements unlock when the campaign id contains the keyword.
_SEASONAL_KEYWORDS = {
    "halloween_creator": "halloween",
    "christmas_designer": "christmas",
}

TIER_BENEFITS: dict[Tier, dict[str, int | bool]] = {
    "bronze": {"discount": 5, "early_access": False, "exclusive_designs": False, "priority_support": False},
    "silver": {"discount": 10, "early_access": True, "exclusive_designs": False, "priority_support": False},
    "gold": {"discount": 15, "early_access": True, "exclusive_designs": True, "priority_support": False},
    "platinum": {"discount": 20, "early_access": True, "exclusive_designs": True, "priority_support": True},
}


def calculate_tier(stats: UserStats) -> Tier:
    if stats.orders_completed >= 10 or stats.total_spent >= 500:
        return "platinum"
    if stats.orders_completed >= 5 or stats.total_spent >= 200:
        return "gold"
    if stats.orders_completed >= 3 or stats.total_spent >= 100:
        return "silver"
    return "bronze"


def calculate_points(stats: UserStats) -> int:
    """Return the display score derived from activity counters."""
    return (
        stats.designs_created * 10
        + stats.orders_completed * 50
        + stats.streak_days * 5
        + stats.referrals_complete * 25
        + len(stats.badges) * 20
    )


def _requirement_met(achievement: Achievement, stats: UserStats, campaign_id: str | None) -> bool:
    kind = achievement.requirement_type
    if kind == "designs_created":
        return stats.designs_created >= achievement.requirement_value
    if kind == "orders_completed":
        return stats.orders_completed >= achievement.requirement_value
    if kind == "streak_days":
        return stats.streak_days >= achievement.requirement_value
    if kind == "total_spent":
        return stats.total_spent >= achievement.requirement_value
    if kind == "referrals":
        return stats.referrals_complete >= achievement.requirement_value
    if kind == "seasonal":
        keyword = _SEASONAL_KEYWORDS.get(achievement.id)
        return bool(campaign_id and keyword and keyword in campaign_id.lower())
    return False


def check_achievements(stats: UserStats, campaign_id: str | None = None) -> list[Achievement]:
    """Return achievements newly unlocked by *stats*.

    Achievements whose badge the user already holds are skipped.

    Args:
        stats: Current activity snapshot.
        campaign_id: Active campaign, used for seasonal achievements.

    Returns:
        Unlocked achievements in catalogue order.
    """
    held = set(stats.badges)
    return [
        achievement
        for achievement in ACHIEVEMENTS
        if achievement.badge.id not in held and _requirement_met(achievement, stats, campaign_id)
    ]


def tier_benefits(tier: Tier) -> dict[str, int | bool]:
    return dict(TIER_BENEFITS[tier])


def next_streak(streak_days: int, last_active: date | None, today: date) -> int:
    """Return the streak after activity on *today*.

    Activity on consecutive days extends the streak, a second action on the
    same day keeps it, and any gap starts over at 1.
    """
    if last_active == today:
        return max(streak_days, 1)
    if last_active == today - timedelta(days=1):
        return streak_days + 1
    return 1


def _load_stats(conn: sqlite3.Connection, user_id: str) -> UserStats:
    designs = conn.execute(
        "SELECT COUNT(*) FROM designs WHERE user_id = ?", (user_id,)
    ).fetchone()[0]
    orders = conn.execute(
        """
        SELECT COUNT(*) AS count, COALESCE(SUM(total_price), 0) AS spent
        FROM orders WHERE user_id = ? AND status IN ('COMPLETED', 'SHIPPED')
        """,
        (user_id,),
    ).fetchone()
    referrals = conn.execute(
        "SELECT COUNT(*) FROM point_history WHERE user_id = ? AND action = ?",
        (user_id, REFERRAL_ACTION),
    ).fetchone()[0]
    streak = conn.execute(
        "SELECT streak_days FROM user_streaks WHERE user_id = ?", (user_id,)
    ).fetchone()
    badges = conn.execute(
        "SELECT badge_id FROM user_badges WHERE user_id = ? ORDER BY unlocked_at, badge_id",
        (user_id,),
    ).fetchall()
    return UserStats(
        designs_created=designs,
        orders_completed=orders["count"],
        streak_days=streak["streak_days"] if streak else 0,
        total_spent=orders["spent"],
        referrals_complete=referrals,
        badges=[row["badge_id"] for row in badges],
    )


def load_user_stats(db: Database, user_id: str) -> UserStats:
    """Build a stats snapshot from the user's stored activity.

    Counts designs, COMPLETED/SHIPPED orders and their spend, completed
    referrals, the current design streak and the badges already unlocked.
    """
    with db.connection() as conn:
        return _load_stats(conn, user_id)


def unlock_achievements(
    conn: sqlite3.Connection,
    user_id: str,
    unlocked_at: str,
    campaign_id: str | None = None,
) -> list[Achievement]:
    """Persist the badges of every achievement *user_id* has newly earned.

    Runs inside the caller's transaction.  Seasonal achievements need the
    campaign the activity happened in, so they can only unlock here.

    Returns:
        The achievements unlocked by this call.
    """
    unlocked = check_achievements(_load_stats(conn, user_id), campaign_id)
    for achievement in unlocked:
        conn.execute(
            """
            INSERT OR IGNORE INTO user_badges (user_id, badge_id, achievement_id, unlocked_at)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, achievement.badge.id, achievement.id, unlocked_at),
        )
        logger.info(f"User {user_id} unlocked achievement {achievement.id}")
    return unlocked


def held_achievements(stats: UserStats) -> list[Achievement]:
    """Return catalogue achievements whose badge the user holds."""
    held = set(stats.badges)
    return [achievement for achievement in ACHIEVEMENTS if achievement.badge.id in held]
