"""Point and level ledger shared by competitions, purchases and referrals.

Each award does three things inside one transaction:

1. upsert the user's ``user_points`` row and apply the delta
2. raise the stored level if ``level_for_points`` now exceeds it
3. append a ``point_history`` audit row carrying the requested delta

Balances are clamped at zero, so removing a like from a user who has already
spent or lost their points cannot drive them negative.  Levels are a
high-water mark: losing points never demotes a user.

Usage Example
-------------
    ledger = PointsLedger(db, points_per_level=500)
    ledger.award("user-1", COMPETITION_POINTS["COMPETITION_ENTRY"], "competition_entry")

    # Inside a wider unit of work (e.g. a like toggle)
    with db.transaction() as conn:
        ...
        ledger.award(owner_id, 5, "like_received", conn=conn)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from promptly.core.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)

COMPETITION_POINTS: dict[str, int] = {
    "DESIGN_SUBMISSION": 50,
    "FIRST_DESIGN": 100,
    "COMPETITION_ENTRY": 100,
    "FIRST_COMPETITION": 200,
    "LIKE_RECEIVED": 5,
    "LIKE_GIVEN": 1,
    "VOTE_RECEIVED": 10,
    "VOTE_GIVEN": 2,
    "SOCIAL_FOLLOW": 50,
    "REFERRAL_COMPLETE": 150,
}


def level_for_points(points: int, per_level: int = 500) -> int:
    """Return the level a balance qualifies for: ``points // per_level + 1``."""
    return max(points, 0) // per_level + 1


@dataclass(frozen=True)
class UserPoints:
    user_id: str
    points: int
    level: int


@dataclass(frozen=True)
class PointHistoryEntry:
    user_id: str
    points: int
    action: str
    description: str | None
    verification_proof: str | None
    created_at: str


class PointsLedger:
    """Award and query competition points.

    Args:
        db: Shared database.
        points_per_level: Points needed for each level step.
        now: Clock used to stamp balances and history rows.
    """

    def __init__(
        self,
        db: Database,
        points_per_level: int = 500,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.points_per_level = points_per_level
        self.now = now

    def award(
        self,
        user_id: str,
        points: int,
        action: str,
        description: str | None = None,
        verification_proof: str | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> UserPoints:
        """Apply a (possibly negative) point delta and record it.

        Args:
            user_id: User receiving or losing points.
            points: Delta to apply.
            action: Machine-readable action tag (``like_received``...).
            description: Human-readable audit text.
            verification_proof: Optional proof reference such as ``order:42``.
            conn: Connection of an open transaction to join.  When omitted
                the award runs in its own transaction.

        Returns:
            The balance after the award.
        """
        if conn is None:
            with self.db.transaction() as own_conn:
                return self._award(
                    own_conn, user_id, points, action, description, verification_proof
                )
        return self._award(conn, user_id, points, action, description, verification_proof)

    def _award(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        points: int,
        action: str,
        description: str | None,
        verification_proof: str | None,
    ) -> UserPoints:
        now = to_iso(self.now())
        row = conn.execute(
            "SELECT points, level FROM user_points WHERE user_id = ?", (user_id,)
        ).fetchone()

        if row is None:
            balance = max(0, points)
            level = level_for_points(balance, self.points_per_level)
            conn.execute(
                "INSERT INTO user_points (user_id, points, level, updated_at) VALUES (?, ?, ?, ?)",
                (user_id, balance, level, now),
            )
        else:
            balance = max(0, row["points"] + points)
            level = max(row["level"], level_for_points(balance, self.points_per_level))
            conn.execute(
                "UPDATE user_points SET points = ?, level = ?, updated_at = ? WHERE user_id = ?",
                (balance, level, now, user_id),
            )
            if level > row["level"]:
                logger.info(f"User {user_id} reached level {level}")

        conn.execute(
            """
            INSERT INTO point_history
                (user_id, points, action, description, verification_proof, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, points, action, description, verification_proof, now),
        )
        logger.debug(f"Awarded {points} points to {user_id} for {action} (balance {balance})")
        return UserPoints(user_id=user_id, points=balance, level=level)

    def record_claim(
        self,
        user_id: str,
        action: str,
        description: str,
        verification_proof: str | None,
        *,
        conn: sqlite3.Connection,
    ) -> int:
        """Write a zero-point history row for a claim awaiting review.

        The balance is untouched; the reviewer awards the points separately.

        Returns:
            The history row id, used to look the claim up again.
        """
        cursor = conn.execute(
            """
            INSERT INTO point_history
                (user_id, points, action, description, verification_proof, created_at)
            VALUES (?, 0, ?, ?, ?, ?)
            """,
            (user_id, action, description, verification_proof, to_iso(self.now())),
        )
        return int(cursor.lastrowid)

    def get(self, user_id: str) -> UserPoints:
        """Return a user's balance; unknown users are at 0 points, level 1."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT points, level FROM user_points WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return UserPoints(user_id=user_id, points=0, level=1)
        return UserPoints(user_id=user_id, points=row["points"], level=row["level"])

    def history(self, user_id: str, limit: int = 20) -> list[PointHistoryEntry]:
        """Return the user's most recent point movements, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id, points, action, description, verification_proof, created_at
                FROM point_history WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [PointHistoryEntry(**dict(row)) for row in rows]

    def rank(self, user_id: str) -> int:
        """Return the user's overall rank (1 = most points)."""
        current = self.get(user_id).points
        with self.db.connection() as conn:
            ahead = conn.execute(
                "SELECT COUNT(*) FROM user_points WHERE points > ?", (current,)
            ).fetchone()[0]
        return ahead + 1
