"""Point rewards outside the like/vote loop: designs, referrals and social follows.

Designs
-------
Saving a design awards ``DESIGN_SUBMISSION`` points (plus ``FIRST_DESIGN`` for
the user's first one), extends the daily design streak and unlocks any
achievements the new totals earn.

Referrals
---------
Every competition entry carries a referral code.  When a referred buyer's
order is fulfilled, the code's owner earns ``REFERRAL_COMPLETE`` points.  A
buyer cannot use their own code and each order pays out once
(``referrals.order_id`` is unique).

Social follows
--------------
Entrants claim a follow by naming the platform and handle.  The claim is a
zero-point ``social_follow_pending`` history row until an admin reviews it:
approval awards ``SOCIAL_FOLLOW`` points, rejection deletes the claim.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

from promptly.core.database import Database, loads_json, to_iso, utcnow
from promptly.core.errors import ConflictError, NotFoundError, ValidationError
from promptly.core.gamification import REFERRAL_ACTION, next_streak, unlock_achievements
from promptly.core.points import COMPETITION_POINTS, PointsLedger

logger = logging.getLogger(__name__)

SocialPlatform = Literal["instagram", "facebook", "twitter", "tiktok"]
SOCIAL_PLATFORMS: tuple[str, ...] = ("instagram", "facebook", "twitter", "tiktok")

SOCIAL_PENDING = "social_follow_pending"
SOCIAL_APPROVED = "social_follow_approved"
SOCIAL_VERIFIED = "social_follow_verified"

# Orders that count as a completed purchase for referral payouts.
REFERRAL_ORDER_STATUSES = ("COMPLETED", "SHIPPED")

_CLAIM_DESCRIPTION = re.compile(r"Social follow claim pending verification: (\w+) - @?(.+)")


@dataclass(frozen=True)
class DesignReward:
    design_id: int
    points_earned: int
    points: int
    level: int
    streak_days: int
    achievements: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReferralResult:
    awarded: bool
    message: str
    referrer_id: str | None = None
    points_awarded: int = 0


@dataclass(frozen=True)
class SocialFollowClaim:
    verification_id: int
    platform: str
    username: str
    proof: str


@dataclass(frozen=True)
class PendingSocialFollow:
    id: int
    user_id: str
    user_email: str | None
    user_name: str | None
    platform: str
    username: str
    screenshot_url: str | None
    submitted_at: str


@dataclass(frozen=True)
class ReviewResult:
    approved: bool
    message: str
    points_awarded: int = 0


class RewardsService:
    """Award points for designs, referrals and verified social follows.

    Args:
        db: Shared database.
        ledger: Points ledger used for every award.
        now: Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        db: Database,
        ledger: PointsLedger,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.now = now

    # ------------------------------------------------------------------
    # Designs
    # ------------------------------------------------------------------

    def record_design(
        self,
        user_id: str,
        name: str,
        image_url: str | None = None,
        *,
        campaign_id: str | None = None,
    ) -> DesignReward:
        """Save a design and apply its rewards in one transaction.

        Args:
            user_id: Design owner.
            name: Display name.
            image_url: Rendered artwork.
            campaign_id: Campaign the design was made in; unlocks seasonal
                achievements such as ``halloween_creator``.
        """
        now = self.now()
        stamp = to_iso(now)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO designs (user_id, name, image_url, created_at) VALUES (?, ?, ?, ?)",
                (user_id, name, image_url, stamp),
            )
            design_id = int(cursor.lastrowid)
            streak = self._touch_streak(conn, user_id, now.date())

            earned = COMPETITION_POINTS["DESIGN_SUBMISSION"]
            balance = self.ledger.award(
                user_id, earned, "design_submission", f"Created design {name}", conn=conn
            )
            design_count = conn.execute(
                "SELECT COUNT(*) FROM designs WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            if design_count == 1:
                earned += COMPETITION_POINTS["FIRST_DESIGN"]
                balance = self.ledger.award(
                    user_id,
                    COMPETITION_POINTS["FIRST_DESIGN"],
                    "first_design",
                    "Created your first design!",
                    conn=conn,
                )

            unlocked = unlock_achievements(conn, user_id, stamp, campaign_id)

        logger.info(f"User {user_id} saved design {design_id} (+{earned} points)")
        return DesignReward(
            design_id=design_id,
            points_earned=earned,
            points=balance.points,
            level=balance.level,
            streak_days=streak,
            achievements=[achievement.id for achievement in unlocked],
        )

    def _touch_streak(self, conn: sqlite3.Connection, user_id: str, today: date) -> int:
        row = conn.execute(
            "SELECT streak_days, last_active_date FROM user_streaks WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            streak = next_streak(0, None, today)
        else:
            streak = next_streak(
                row["streak_days"], date.fromisoformat(row["last_active_date"]), today
            )
        conn.execute(
            """
            INSERT INTO user_streaks (user_id, streak_days, last_active_date)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                streak_days = excluded.streak_days,
                last_active_date = excluded.last_active_date
            """,
            (user_id, streak, today.isoformat()),
        )
        return streak

    # ------------------------------------------------------------------
    # Referrals
    # ------------------------------------------------------------------

    def complete_referral(
        self,
        user_id: str,
        order_id: int,
        referral_code: str | None = None,
    ) -> ReferralResult:
        """Pay the referrer of a fulfilled order.

        The code comes from the argument, else from the order metadata
        (``referralCode`` or ``ref``).

        Raises:
            NotFoundError: The order is not the user's or is not fulfilled.
            ValidationError: Unknown code, or the buyer used their own code.
        """
        placeholders = ", ".join("?" for _ in REFERRAL_ORDER_STATUSES)
        with self.db.transaction() as conn:
            order = conn.execute(
                f"SELECT metadata FROM orders WHERE id = ? AND user_id = ? AND status IN ({placeholders})",
                (order_id, user_id, *REFERRAL_ORDER_STATUSES),
            ).fetchone()
            if order is None:
                raise NotFoundError("Order not found or not completed")

            metadata = loads_json(order["metadata"], {})
            if not isinstance(metadata, dict):
                metadata = {}
            code = referral_code or metadata.get("referralCode") or metadata.get("ref")
            if not code:
                return ReferralResult(awarded=False, message="No referral code found")
            code = str(code).strip().upper()

            entry = conn.execute(
                "SELECT user_id FROM competition_entries WHERE referral_code = ? LIMIT 1",
                (code,),
            ).fetchone()
            if entry is None:
                raise ValidationError("Invalid referral code")
            referrer_id = entry["user_id"]
            if referrer_id == user_id:
                logger.warning(f"User {user_id} tried to use their own referral code {code}")
                raise ValidationError("Cannot refer yourself")

            existing = conn.execute(
                "SELECT referrer_id FROM referrals WHERE order_id = ?", (order_id,)
            ).fetchone()
            if existing is not None:
                return ReferralResult(
                    awarded=False,
                    message="Referral already processed",
                    referrer_id=existing["referrer_id"],
                )

            points = COMPETITION_POINTS["REFERRAL_COMPLETE"]
            now = to_iso(self.now())
            conn.execute(
                """
                INSERT INTO referrals
                    (referrer_id, referred_user_id, order_id, referral_code, points_awarded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (referrer_id, user_id, order_id, code, points, now),
            )
            self.ledger.award(
                referrer_id,
                points,
                REFERRAL_ACTION,
                f"Referral purchase completed by user {user_id}",
                f"order:{order_id}",
                conn=conn,
            )
            unlock_achievements(conn, referrer_id, now)

        logger.info(f"Referral {code} paid {points} points to {referrer_id} for order {order_id}")
        return ReferralResult(
            awarded=True,
            message="Referral completed and points awarded",
            referrer_id=referrer_id,
            points_awarded=points,
        )

    # ------------------------------------------------------------------
    # Social follows
    # ------------------------------------------------------------------

    def _open_entry(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT e.* FROM competition_entries e
            JOIN competitions c ON c.id = e.competition_id
            WHERE e.user_id = ? AND c.is_active = 1 AND c.end_date >= ?
            ORDER BY e.created_at DESC LIMIT 1
            """,
            (user_id, to_iso(self.now())),
        ).fetchone()

    def submit_social_follow(
        self,
        user_id: str,
        platform: str,
        username: str,
        screenshot_url: str | None = None,
    ) -> SocialFollowClaim:
        """File a follow claim against the user's open competition entry.

        Raises:
            ValidationError: Unknown platform or empty handle.
            NotFoundError: No entry in an open competition.
            ConflictError: A claim is already pending or verified.
        """
        platform = platform.strip().lower()
        username = username.strip().lstrip("@")
        if platform not in SOCIAL_PLATFORMS:
            raise ValidationError(f"Unsupported platform: {platform}")
        if not username:
            raise ValidationError("username is required")

        proof = screenshot_url or f"{platform}:{username}"
        with self.db.transaction() as conn:
            entry = self._open_entry(conn, user_id)
            if entry is None:
                raise NotFoundError("No active competition entry found. Complete a purchase first.")
            if entry["social_follow_verified"]:
                raise ConflictError("Social follow already verified")
            pending = conn.execute(
                "SELECT 1 FROM point_history WHERE user_id = ? AND action = ?",
                (user_id, SOCIAL_PENDING),
            ).fetchone()
            if pending:
                raise ConflictError("A social follow claim is already pending review")

            conn.execute(
                """
                UPDATE competition_entries
                SET social_platform = ?, social_username = ?, social_follow_verified = 0
                WHERE id = ?
                """,
                (platform, username, entry["id"]),
            )
            verification_id = self.ledger.record_claim(
                user_id,
                SOCIAL_PENDING,
                f"Social follow claim pending verification: {platform} - @{username}",
                proof,
                conn=conn,
            )

        logger.info(f"User {user_id} claimed a {platform} follow as @{username}")
        return SocialFollowClaim(
            verification_id=verification_id, platform=platform, username=username, proof=proof
        )

    def social_follow_status(self, user_id: str) -> dict:
        with self.db.connection() as conn:
            entry = self._open_entry(conn, user_id)
        if entry is None:
            return {"verified": False, "message": "No active competition entry"}
        return {
            "verified": bool(entry["social_follow_verified"]),
            "platform": entry["social_platform"],
            "username": entry["social_username"],
        }

    def pending_social_follows(self) -> list[PendingSocialFollow]:
        """Return claims awaiting review, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT h.id, h.user_id, h.description, h.verification_proof, h.created_at,
                       u.email, u.name
                FROM point_history h
                LEFT JOIN users u ON u.id = h.user_id
                WHERE h.action = ?
                ORDER BY h.id DESC
                """,
                (SOCIAL_PENDING,),
            ).fetchall()

        pending = []
        for row in rows:
            match = _CLAIM_DESCRIPTION.match(row["description"] or "")
            proof = row["verification_proof"] or ""
            pending.append(
                PendingSocialFollow(
                    id=row["id"],
                    user_id=row["user_id"],
                    user_email=row["email"],
                    user_name=row["name"],
                    platform=match.group(1) if match else "Unknown",
                    username=match.group(2) if match else "Unknown",
                    screenshot_url=proof if proof.startswith("http") else None,
                    submitted_at=row["created_at"],
                )
            )
        return pending

    def review_social_follow(
        self,
        verification_id: int,
        approved: bool,
        notes: str | None = None,
    ) -> ReviewResult:
        """Approve (award points) or reject (delete) a pending follow claim.

        Raises:
            NotFoundError: No history row with that id.
            ValidationError: The row is not a pending follow claim.
        """
        with self.db.transaction() as conn:
            claim = conn.execute(
                "SELECT * FROM point_history WHERE id = ?", (verification_id,)
            ).fetchone()
            if claim is None:
                raise NotFoundError("Verification not found")
            if claim["action"] != SOCIAL_PENDING:
                raise ValidationError("This is not a pending social follow verification")

            user_id = claim["user_id"]
            if not approved:
                conn.execute("DELETE FROM point_history WHERE id = ?", (verification_id,))
                conn.execute(
                    """
                    UPDATE competition_entries
                    SET social_platform = NULL, social_username = NULL
                    WHERE user_id = ? AND social_follow_verified = 0
                    """,
                    (user_id,),
                )
                logger.info(f"Social follow claim {verification_id} rejected")
                return ReviewResult(
                    approved=False, message="Social follow verification rejected and removed"
                )

            suffix = f" - APPROVED by admin ({notes})" if notes else " - APPROVED by admin"
            conn.execute(
                "UPDATE point_history SET action = ?, description = ? WHERE id = ?",
                (SOCIAL_APPROVED, (claim["description"] or "") + suffix, verification_id),
            )
            points = COMPETITION_POINTS["SOCIAL_FOLLOW"]
            self.ledger.award(
                user_id,
                points,
                SOCIAL_VERIFIED,
                "Social follow verified",
                claim["verification_proof"],
                conn=conn,
            )
            conn.execute(
                """
                UPDATE competition_entries SET social_follow_verified = 1
                WHERE user_id = ? AND social_platform IS NOT NULL
                """,
                (user_id,),
            )

        logger.info(f"Social follow claim {verification_id} approved for {user_id}")
        return ReviewResult(
            approved=True,
            message=f"Social follow verified and {points} points awarded",
            points_awarded=points,
        )
