"""SQLite persistence for the Promptly Printed backend.

Every service shares one :class:`Database`.  Connections are opened per
operation and closed straight after, so the object is safe to share between
the threads FastAPI runs sync handlers on.

Writes go through :meth:`Database.transaction`, which takes SQLite's write
lock up front with ``BEGIN IMMEDIATE``.  A find-then-insert sequence (like or
vote toggling, balance upserts) therefore cannot interleave with another
writer, and any exception rolls the whole unit of work back.

JSON columns (order metadata, available actions, transaction metadata) are
stored as TEXT; use :func:`dumps_json` / :func:`loads_json` at the service
boundary.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT,
    username TEXT,
    email TEXT,
    image TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS designs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    image_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS competitions (
    id TEXT PRIMARY KEY,
    theme TEXT NOT NULL,
    theme_icon TEXT,
    prize TEXT,
    funnel_tag TEXT,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS competition_entries (
    id TEXT PRIMARY KEY,
    competition_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    design_id INTEGER NOT NULL,
    order_id INTEGER,
    purchase_verified INTEGER NOT NULL DEFAULT 0,
    referral_code TEXT,
    social_platform TEXT,
    social_username TEXT,
    social_follow_verified INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (competition_id, design_id)
);

CREATE INDEX IF NOT EXISTS idx_entries_user ON competition_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_entries_referral ON competition_entries(referral_code);

CREATE TABLE IF NOT EXISTS referrals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    referrer_id TEXT NOT NULL,
    referred_user_id TEXT NOT NULL,
    order_id INTEGER NOT NULL UNIQUE,
    referral_code TEXT NOT NULL,
    points_awarded INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS likes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    entry_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, entry_id)
);

CREATE TABLE IF NOT EXISTS votes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    entry_id TEXT NOT NULL,
    competition_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, entry_id)
);

CREATE TABLE IF NOT EXISTS user_points (
    user_id TEXT PRIMARY KEY,
    points INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS point_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    points INTEGER NOT NULL,
    action TEXT NOT NULL,
    description TEXT,
    verification_proof TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_point_history_user
ON point_history(user_id, id DESC);

CREATE TABLE IF NOT EXISTS user_streaks (
    user_id TEXT PRIMARY KEY,
    streak_days INTEGER NOT NULL,
    last_active_date TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_badges (
    user_id TEXT NOT NULL,
    badge_id TEXT NOT NULL,
    achievement_id TEXT NOT NULL,
    unlocked_at TEXT NOT NULL,
    PRIMARY KEY (user_id, badge_id)
);

CREATE TABLE IF NOT EXISTS user_credits (
    user_id TEXT PRIMARY KEY,
    credits REAL NOT NULL,
    monthly_credits REAL NOT NULL,
    monthly_credits_used REAL NOT NULL DEFAULT 0,
    last_monthly_reset TEXT NOT NULL,
    welcome_credits REAL NOT NULL DEFAULT 0,
    welcome_credits_used REAL NOT NULL DEFAULT 0,
    lifetime_credits REAL NOT NULL DEFAULT 0,
    lifetime_spent REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    amount REAL NOT NULL,
    balance REAL NOT NULL,
    type TEXT NOT NULL,
    reason TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_credit_transactions_user
ON credit_transactions(user_id, id DESC);

CREATE TABLE IF NOT EXISTS credit_packs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    credits REAL NOT NULL,
    bonus_credits REAL NOT NULL DEFAULT 0,
    price REAL NOT NULL,
    currency TEXT NOT NULL,
    is_popular INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    display_order INTEGER NOT NULL DEFAULT 0,
    description TEXT
);

CREATE TABLE IF NOT EXISTS credit_purchases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    pack_id TEXT NOT NULL,
    credits REAL NOT NULL,
    price REAL NOT NULL,
    currency TEXT NOT NULL,
    square_order_id TEXT NOT NULL UNIQUE,
    payment_link_id TEXT,
    square_payment_id TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS guest_generations (
    session_id TEXT PRIMARY KEY,
    ip_address TEXT,
    count INTEGER NOT NULL DEFAULT 0,
    last_gen_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS image_generations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    session_id TEXT,
    prompt TEXT NOT NULL,
    ai_model TEXT NOT NULL,
    credits_used REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    image_url TEXT,
    print_ready_url TEXT,
    error_message TEXT,
    generation_time_ms INTEGER,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    status TEXT NOT NULL,
    total_price REAL NOT NULL DEFAULT 0,
    shipping_method TEXT,
    prodigi_order_id TEXT UNIQUE,
    metadata TEXT,
    available_actions TEXT,
    last_action_check TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recipients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL UNIQUE,
    name TEXT NOT NULL,
    email TEXT,
    phone_number TEXT,
    address_line1 TEXT NOT NULL,
    address_line2 TEXT,
    city TEXT NOT NULL,
    state TEXT,
    postal_code TEXT NOT NULL,
    country_code TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS shipments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL,
    prodigi_shipment_id TEXT NOT NULL UNIQUE,
    carrier TEXT NOT NULL,
    service TEXT NOT NULL,
    tracking_number TEXT,
    tracking_url TEXT,
    shipped_at TEXT NOT NULL,
    items TEXT
);

CREATE TABLE IF NOT EXISTS order_processing_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL,
    error TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_attempt TEXT NOT NULL
);
"""


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime, assuming UTC when naive."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialise a datetime for storage, assuming UTC when naive."""
    return as_utc(value).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dumps_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads_json(value: str | None, default: Any = None) -> Any:
    """Decode a JSON column, returning *default* for NULL or corrupt text."""
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column value")
        return default


class Database:
    """SQLite database holding all platform state.

    Args:
        db_path: Path to the SQLite database file.  Parent directories are
            created if needed.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized database at {self.db_path}")

    def _initialize_db(self) -> None:
        """Create the schema if it doesn't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly in transaction()
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for reads; it is closed on exit."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``.

        Commits when the block exits normally and rolls back when it raises.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Seed helpers used by the admin endpoints and tests.
    # ------------------------------------------------------------------

    def upsert_user(
        self,
        user_id: str,
        *,
        name: str | None = None,
        username: str | None = None,
        email: str | None = None,
        image: str | None = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, name, username, email, image, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    username = excluded.username,
                    email = excluded.email,
                    image = excluded.image
                """,
                (user_id, name, username, email, image, to_iso(utcnow())),
            )

    def create_design(self, user_id: str, name: str, image_url: str | None = None) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO designs (user_id, name, image_url, created_at) VALUES (?, ?, ?, ?)",
                (user_id, name, image_url, to_iso(utcnow())),
            )
            return int(cursor.lastrowid)
