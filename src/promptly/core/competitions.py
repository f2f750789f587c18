"""Design competitions: entries, likes, votes and the leaderboard.

Scoring
-------
An entry's competition score is ``votes * 10 + likes * 5`` (:func:`score`).
The leaderboard sorts entries by score (ties go to the earlier entry), ranks
them from 1 and awards gold/silver/bronze badges to the top three *after*
sorting, then cuts the list to the requested size.

Likes and votes
---------------
Toggling is find-then-create-or-delete.  The lookup, the insert/delete and
the point awards for both participants run inside one ``BEGIN IMMEDIATE``
transaction, and the ``(user_id, entry_id)`` unique index backs it up, so two
concurrent clicks cannot double-award or leave the ledger out of step with
the like/vote rows.

Competition windows
-------------------
A competition accepts submissions, likes and votes while it is active and its
end date has not passed.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Literal

from promptly.core.database import Database, as_utc, parse_iso, to_iso, utcnow
from promptly.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from promptly.core.points import COMPETITION_POINTS, PointsLedger

logger = logging.getLogger(__name__)

VOTE_WEIGHT = 10
LIKE_WEIGHT = 5

# Order statuses that count as a completed purchase for entry verification.
VERIFIED_PURCHASE_STATUSES = ("COMPLETED", "PROCESSING", "SHIPPED")

Badge = Literal["gold", "silver", "bronze"]
_BADGES: tuple[Badge, ...] = ("gold", "silver", "bronze")


def score(votes: int, likes: int) -> int:
    """Return an entry's competition points."""
    return votes * VOTE_WEIGHT + likes * LIKE_WEIGHT


@dataclass(frozen=True)
class Competition:
    id: str
    theme: str
    theme_icon: str | None
    prize: str | None
    funnel_tag: str | None
    start_date: datetime
    end_date: datetime
    is_active: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Competition":
        return cls(
            id=row["id"],
            theme=row["theme"],
            theme_icon=row["theme_icon"],
            prize=row["prize"],
            funnel_tag=row["funnel_tag"],
            start_date=parse_iso(row["start_date"]),
            end_date=parse_iso(row["end_date"]),
            is_active=bool(row["is_active"]),
        )

    def accepts_activity(self, now: datetime) -> bool:
        return self.is_active and self.end_date >= now

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_date"] = to_iso(self.start_date)
        data["end_date"] = to_iso(self.end_date)
        return data


@dataclass(frozen=True)
class CompetitionEntry:
    id: str
    competition_id: str
    user_id: str
    design_id: int
    order_id: int | None
    purchase_verified: bool
    referral_code: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CompetitionEntry":
        return cls(
            id=row["id"],
            competition_id=row["competition_id"],
            user_id=row["user_id"],
            design_id=row["design_id"],
            order_id=row["order_id"],
            purchase_verified=bool(row["purchase_verified"]),
            referral_code=row["referral_code"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class LeaderboardRow:
    rank: int
    entry_id: str
    user_id: str
    username: str
    avatar: str | None
    design_id: str
    design_name: str | None
    design_image: str | None
    votes: int
    likes: int
    points: int
    total_points: int
    level: int
    badge: Badge | None


@dataclass(frozen=True)
class ToggleResult:
    active: bool
    count: int


def rank_leaderboard(rows: list[dict[str, Any]], limit: int) -> list[LeaderboardRow]:
    """Score, sort, rank, badge and slice raw entry rows.

    Args:
        rows: Dicts with ``entry_id``, ``user_id``, ``name``, ``username``,
            ``image``, ``design_id``, ``design_name``, ``design_image``,
            ``votes``, ``likes``, ``total_points``, ``level`` and
            ``created_at``.
        limit: Maximum number of rows to return.

    Returns:
        The top ``limit`` entries in rank order.
    """
    scored = sorted(
        rows,
        key=lambda row: (-score(row["votes"], row["likes"]), row["created_at"]),
    )
    ranked: list[LeaderboardRow] = []
    for index, row in enumerate(scored[:limit]):
        ranked.append(
            LeaderboardRow(
                rank=index + 1,
                entry_id=row["entry_id"],
                user_id=row["user_id"],
                username=row.get("name") or row.get("username") or "Anonymous",
                avatar=row.get("image"),
                design_id=str(row["design_id"]),
                design_name=row.get("design_name"),
                design_image=row.get("design_image"),
                votes=row["votes"],
                likes=row["likes"],
                points=score(row["votes"], row["likes"]),
                total_points=row.get("total_points") or 0,
                level=row.get("level") or 1,
                badge=_BADGES[index] if index < len(_BADGES) else None,
            )
        )
    return ranked


class CompetitionService:
    """Competition workflows backed by the shared database and points ledger.

    Args:
        db: Shared database.
        ledger: Points ledger used for every award.
        now: Clock returning an aware UTC datetime; injectable for tests.
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
    # Competitions
    # ------------------------------------------------------------------

    def create_competition(
        self,
        theme: str,
        start_date: datetime,
        end_date: datetime,
        *,
        theme_icon: str | None = None,
        prize: str | None = None,
        funnel_tag: str | None = None,
        is_active: bool = True,
        competition_id: str | None = None,
    ) -> Competition:
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date")

        competition_id = competition_id or uuid.uuid4().hex
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO competitions
                        (id, theme, theme_icon, prize, funnel_tag,
                         start_date, end_date, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        competition_id,
                        theme,
                        theme_icon,
                        prize,
                        funnel_tag,
                        to_iso(start_date),
                        to_iso(end_date),
                        int(is_active),
                        to_iso(self.now()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Competition {competition_id} already exists") from e

        logger.info(f"Created competition {competition_id} ({theme})")
        return self.get_competition(competition_id)

    def get_competition(self, competition_id: str) -> Competition:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM competitions WHERE id = ?", (competition_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("Competition not found")
        return Competition.from_row(row)

    def active_competition(self, funnel_tag: str | None = None) -> Competition | None:
        """Return the most recently started competition still open, if any."""
        query = "SELECT * FROM competitions WHERE is_active = 1 AND end_date >= ?"
        params: list[Any] = [to_iso(self.now())]
        if funnel_tag:
            query += " AND funnel_tag = ?"
            params.append(funnel_tag)
        query += " ORDER BY start_date DESC LIMIT 1"

        with self.db.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return Competition.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def submit_entry(self, competition_id: str, user_id: str, design_id: int) -> CompetitionEntry:
        """Submit one of the user's designs to an open competition.

        Raises:
            NotFoundError: Unknown competition or design.
            ValidationError: Competition is closed.
            PermissionDeniedError: Design belongs to someone else.
            ConflictError: Design already entered in this competition.
        """
        competition = self.get_competition(competition_id)
        if not competition.accepts_activity(self.now()):
            raise ValidationError("Competition is not active")

        with self.db.transaction() as conn:
            design = conn.execute(
                "SELECT id, user_id FROM designs WHERE id = ?", (design_id,)
            ).fetchone()
            if design is None:
                raise NotFoundError("Design not found")
            if design["user_id"] != user_id:
                raise PermissionDeniedError("You can only submit your own designs")

            existing = conn.execute(
                "SELECT 1 FROM competition_entries WHERE competition_id = ? AND design_id = ?",
                (competition_id, design_id),
            ).fetchone()
            if existing:
                raise ConflictError("Design already submitted to this competition")

            entry_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO competition_entries
                    (id, competition_id, user_id, design_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry_id, competition_id, user_id, design_id, to_iso(self.now())),
            )

            self.ledger.award(
                user_id,
                COMPETITION_POINTS["COMPETITION_ENTRY"],
                "competition_entry",
                f"Submitted design to {competition.theme} competition",
                conn=conn,
            )

            entry_count = conn.execute(
                "SELECT COUNT(*) FROM competition_entries WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            if entry_count == 1:
                self.ledger.award(
                    user_id,
                    COMPETITION_POINTS["FIRST_COMPETITION"],
                    "first_competition",
                    "First competition entry!",
                    conn=conn,
                )

        logger.info(f"User {user_id} entered design {design_id} in competition {competition_id}")
        return self.get_entry(entry_id)

    def get_entry(self, entry_id: str) -> CompetitionEntry:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM competition_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("Entry not found")
        return CompetitionEntry.from_row(row)

    def list_entries(self, competition_id: str) -> list[CompetitionEntry]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM competition_entries WHERE competition_id = ? ORDER BY created_at",
                (competition_id,),
            ).fetchall()
        return [CompetitionEntry.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Likes and votes
    # ------------------------------------------------------------------

    def toggle_like(self, entry_id: str, user_id: str) -> ToggleResult:
        """Like an entry, or remove the user's existing like."""
        return self._toggle(
            entry_id,
            user_id,
            table="likes",
            received=COMPETITION_POINTS["LIKE_RECEIVED"],
            given=COMPETITION_POINTS["LIKE_GIVEN"],
            noun="like",
        )

    def toggle_vote(self, entry_id: str, user_id: str) -> ToggleResult:
        """Vote for an entry, or withdraw the user's existing vote."""
        return self._toggle(
            entry_id,
            user_id,
            table="votes",
            received=COMPETITION_POINTS["VOTE_RECEIVED"],
            given=COMPETITION_POINTS["VOTE_GIVEN"],
            noun="vote",
        )

    def _toggle(
        self,
        entry_id: str,
        user_id: str,
        *,
        table: Literal["likes", "votes"],
        received: int,
        given: int,
        noun: str,
    ) -> ToggleResult:
        with self.db.transaction() as conn:
            entry = conn.execute(
                """
                SELECT e.id, e.user_id, e.competition_id, c.is_active, c.end_date
                FROM competition_entries e
                JOIN competitions c ON c.id = e.competition_id
                WHERE e.id = ?
                """,
                (entry_id,),
            ).fetchone()
            if entry is None:
                raise NotFoundError("Entry not found")
            if not entry["is_active"] or parse_iso(entry["end_date"]) < self.now():
                raise ValidationError(f"Competition is not accepting {noun}s")

            existing = conn.execute(
                f"SELECT id FROM {table} WHERE user_id = ? AND entry_id = ?",
                (user_id, entry_id),
            ).fetchone()

            if existing:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (existing["id"],))
                self.ledger.award(
                    entry["user_id"],
                    -received,
                    f"{noun}_removed",
                    f"{noun.capitalize()} removed from competition entry",
                    conn=conn,
                )
                self.ledger.award(
                    user_id,
                    -given,
                    f"{noun}_given_removed",
                    f"Removed your {noun} from a competition entry",
                    conn=conn,
                )
                active = False
            else:
                if table == "votes":
                    conn.execute(
                        """
                        INSERT INTO votes (user_id, entry_id, competition_id, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (user_id, entry_id, entry["competition_id"], to_iso(self.now())),
                    )
                else:
                    conn.execute(
                        "INSERT INTO likes (user_id, entry_id, created_at) VALUES (?, ?, ?)",
                        (user_id, entry_id, to_iso(self.now())),
                    )
                self.ledger.award(
                    entry["user_id"],
                    received,
                    f"{noun}_received",
                    f"Received a {noun} on a competition entry",
                    conn=conn,
                )
                self.ledger.award(
                    user_id,
                    given,
                    f"{noun}_given",
                    f"{'Liked' if noun == 'like' else 'Voted on'} a competition entry",
                    conn=conn,
                )
                active = True

            count = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE entry_id = ?", (entry_id,)
            ).fetchone()[0]

        logger.info(f"User {user_id} {'added' if active else 'removed'} {noun} on entry {entry_id}")
        return ToggleResult(active=active, count=count)

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    def leaderboard(self, competition_id: str, limit: int = 10) -> list[LeaderboardRow]:
        """Return the ranked top ``limit`` entries of a competition."""
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        self.get_competition(competition_id)

        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    e.id AS entry_id,
                    e.user_id,
                    e.design_id,
                    e.created_at,
                    u.name,
                    u.username,
                    u.image,
                    d.name AS design_name,
                    d.image_url AS design_image,
                    COALESCE(up.points, 0) AS total_points,
                    COALESCE(up.level, 1) AS level,
                    (SELECT COUNT(*) FROM votes v WHERE v.entry_id = e.id) AS votes,
                    (SELECT COUNT(*) FROM likes l WHERE l.entry_id = e.id) AS likes
                FROM competition_entries e
                LEFT JOIN users u ON u.id = e.user_id
                LEFT JOIN designs d ON d.id = e.design_id
                LEFT JOIN user_points up ON up.user_id = e.user_id
                WHERE e.competition_id = ?
                """,
                (competition_id,),
            ).fetchall()

        return rank_leaderboard([dict(row) for row in rows], limit)

    # ------------------------------------------------------------------
    # Purchase verification
    # ------------------------------------------------------------------

    def verify_purchase(
        self,
        user_id: str,
        order_id: int,
        *,
        design_id: int | None = None,
        competition_id: str | None = None,
    ) -> CompetitionEntry | None:
        """Link a completed order to the user's entry, creating one if needed.

        Returns:
            The verified entry, or ``None`` when the user has no entry and no
            design was supplied to create one.
        """
        placeholders = ", ".join("?" for _ in VERIFIED_PURCHASE_STATUSES)
        with self.db.connection() as conn:
            order = conn.execute(
                f"SELECT id FROM orders WHERE id = ? AND user_id = ? AND status IN ({placeholders})",
                (order_id, user_id, *VERIFIED_PURCHASE_STATUSES),
            ).fetchone()
        if order is None:
            raise NotFoundError("Order not found or not completed")

        if competition_id:
            competition = self.get_competition(competition_id)
        else:
            competition = self.active_competition()
            if competition is None:
                raise NotFoundError("No active competition found")

        with self.db.transaction() as conn:
            query = "SELECT * FROM competition_entries WHERE competition_id = ? AND user_id = ?"
            params: list[Any] = [competition.id, user_id]
            if design_id is not None:
                query += " AND design_id = ?"
                params.append(design_id)
            row = conn.execute(query + " ORDER BY created_at LIMIT 1", params).fetchone()

            if row is not None:
                entry_id = row["id"]
                conn.execute(
                    "UPDATE competition_entries SET order_id = ?, purchase_verified = 1 WHERE id = ?",
                    (order_id, entry_id),
                )
            elif design_id is not None:
                owner = conn.execute(
                    "SELECT user_id FROM designs WHERE id = ?", (design_id,)
                ).fetchone()
                if owner is None:
                    raise NotFoundError("Design not found")
                if owner["user_id"] != user_id:
                    raise PermissionDeniedError("You can only submit your own designs")

                entry_id = uuid.uuid4().hex
                conn.execute(
                    """
                    INSERT INTO competition_entries
                        (id, competition_id, user_id, design_id, order_id,
                         purchase_verified, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    (entry_id, competition.id, user_id, design_id, order_id, to_iso(self.now())),
                )
                self.ledger.award(
                    user_id,
                    COMPETITION_POINTS["COMPETITION_ENTRY"],
                    "competition_entry",
                    f"Entered {competition.theme} competition with purchase",
                    f"order:{order_id}",
                    conn=conn,
                )
            else:
                return None

            referral = conn.execute(
                "SELECT referral_code FROM competition_entries WHERE id = ?", (entry_id,)
            ).fetchone()["referral_code"]
            if not referral:
                prefix = competition.funnel_tag or "PP"
                code = f"{prefix}-{user_id[:4]}-{entry_id[:6]}".upper()
                conn.execute(
                    "UPDATE competition_entries SET referral_code = ? WHERE id = ?",
                    (code, entry_id),
                )

        logger.info(f"Verified purchase {order_id} for entry {entry_id}")
        return self.get_entry(entry_id)
