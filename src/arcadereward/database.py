"""SQLite database interface for the reward engine.

Stores shops, game configuration, play sessions, the scoring ledger, the
discount-code ledger, monthly usage counters and webhook deliveries. Quota
increments, session completion and redemption are conditional updates so
concurrent requests cannot double-apply them.
"""

import json
import sqlite3
from datetime import datetime
from typing import Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    CustomerStats,
    DiscountCode,
    GameConfig,
    GameScore,
    GameSession,
    Notification,
    PlanLimits,
    Shop,
    UsageCounter,
    UsageRecord,
    WebhookDelivery,
    utcnow,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Installed shops (plan and commerce API token)
CREATE TABLE IF NOT EXISTS shops (
    shop_domain TEXT PRIMARY KEY,
    access_token TEXT,
    plan TEXT NOT NULL DEFAULT 'free',
    is_active INTEGER NOT NULL DEFAULT 1,
    installed_at TEXT NOT NULL
);

-- Per-shop game configuration
CREATE TABLE IF NOT EXISTS game_configs (
    shop_domain TEXT PRIMARY KEY,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    max_plays_per_customer INTEGER NOT NULL,
    max_plays_per_day INTEGER NOT NULL,
    discount_tiers TEXT NOT NULL,
    discount_expiry_hours INTEGER NOT NULL,
    game_speed REAL NOT NULL DEFAULT 1.0,
    difficulty TEXT NOT NULL DEFAULT 'medium',
    updated_at TEXT NOT NULL
);

-- Play sessions
CREATE TABLE IF NOT EXISTS game_sessions (
    session_id TEXT PRIMARY KEY,
    shop_domain TEXT NOT NULL,
    customer_id TEXT,
    customer_email TEXT,
    ip_address TEXT NOT NULL,
    user_agent TEXT NOT NULL,
    source TEXT NOT NULL,
    referrer TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    final_score INTEGER,
    discount_earned INTEGER,
    discount_code TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    game_data TEXT NOT NULL DEFAULT '{}',
    ephemeral INTEGER NOT NULL DEFAULT 0
);

-- Scoring ledger
CREATE TABLE IF NOT EXISTS game_scores (
    score_id INTEGER PRIMARY KEY AUTOINCREMENT,
    shop_domain TEXT NOT NULL,
    session_id TEXT NOT NULL,
    score INTEGER NOT NULL,
    discount_earned INTEGER NOT NULL DEFAULT 0,
    discount_code TEXT,
    customer_id TEXT,
    customer_email TEXT,
    game_data TEXT NOT NULL DEFAULT '{}',
    achieved_at TEXT NOT NULL
);

-- Discount code ledger (one entry per session, codes unique per shop)
CREATE TABLE IF NOT EXISTS discount_codes (
    shop_domain TEXT NOT NULL,
    code TEXT NOT NULL,
    session_id TEXT NOT NULL UNIQUE,
    value INTEGER NOT NULL,
    type TEXT NOT NULL,
    price_rule_id TEXT,
    discount_code_id TEXT,
    customer_id TEXT,
    customer_email TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    is_used INTEGER NOT NULL DEFAULT 0,
    used_at TEXT,
    order_id TEXT,
    order_value REAL,
    discount_amount REAL,
    currency TEXT,
    issuance_status TEXT NOT NULL CHECK(issuance_status IN ('pending', 'issued', 'failed')),
    issuance_attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    PRIMARY KEY (shop_domain, code)
);

-- Monthly usage counters (one row per shop, month and metric)
CREATE TABLE IF NOT EXISTS usage_records (
    shop_domain TEXT NOT NULL,
    period TEXT NOT NULL,
    metric TEXT NOT NULL,
    value INTEGER NOT NULL DEFAULT 0,
    limit_value INTEGER NOT NULL,
    warning_80 INTEGER NOT NULL DEFAULT 0,
    warning_95 INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (shop_domain, period, metric)
);

-- Customer aggregates
CREATE TABLE IF NOT EXISTS customers (
    shop_domain TEXT NOT NULL,
    identifier TEXT NOT NULL,
    total_sessions INTEGER NOT NULL DEFAULT 0,
    total_score INTEGER NOT NULL DEFAULT 0,
    best_score INTEGER NOT NULL DEFAULT 0,
    total_discounts_earned INTEGER NOT NULL DEFAULT 0,
    first_played_at TEXT NOT NULL,
    last_played_at TEXT NOT NULL,
    PRIMARY KEY (shop_domain, identifier)
);

-- Merchant notifications
CREATE TABLE IF NOT EXISTS notifications (
    notification_id TEXT PRIMARY KEY,
    shop_domain TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    priority TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

-- Webhook delivery log (for idempotency)
CREATE TABLE IF NOT EXISTS webhook_deliveries (
    webhook_id TEXT PRIMARY KEY,
    shop_domain TEXT NOT NULL,
    topic TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('processing', 'completed', 'failed')),
    received_at TEXT NOT NULL,
    processed_at TEXT,
    error_message TEXT
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_sessions_shop_started ON game_sessions(shop_domain, started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_ip ON game_sessions(shop_domain, ip_address);
CREATE INDEX IF NOT EXISTS idx_scores_shop ON game_scores(shop_domain);
CREATE INDEX IF NOT EXISTS idx_discounts_status ON discount_codes(issuance_status);
CREATE INDEX IF NOT EXISTS idx_notifications_shop ON notifications(shop_domain);
"""

_WARNING_COLUMNS = {80: "warning_80", 95: "warning_95"}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _session_from_row(row: aiosqlite.Row) -> GameSession:
    return GameSession(
        session_id=row["session_id"],
        shop_domain=row["shop_domain"],
        customer_id=row["customer_id"],
        customer_email=row["customer_email"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        source=row["source"],
        referrer=row["referrer"],
        started_at=_dt(row["started_at"]),
        ended_at=_dt(row["ended_at"]),
        final_score=row["final_score"],
        discount_earned=row["discount_earned"],
        discount_code=row["discount_code"],
        completed=bool(row["completed"]),
        game_data=json.loads(row["game_data"] or "{}"),
        ephemeral=bool(row["ephemeral"]),
    )


def _discount_from_row(row: aiosqlite.Row) -> DiscountCode:
    return DiscountCode(
        shop_domain=row["shop_domain"],
        code=row["code"],
        session_id=row["session_id"],
        value=row["value"],
        type=row["type"],
        price_rule_id=row["price_rule_id"],
        discount_code_id=row["discount_code_id"],
        customer_id=row["customer_id"],
        customer_email=row["customer_email"],
        created_at=_dt(row["created_at"]),
        expires_at=_dt(row["expires_at"]),
        is_used=bool(row["is_used"]),
        used_at=_dt(row["used_at"]),
        order_id=row["order_id"],
        order_value=row["order_value"],
        discount_amount=row["discount_amount"],
        currency=row["currency"],
        issuance_status=row["issuance_status"],
        issuance_attempts=row["issuance_attempts"],
        last_error=row["last_error"],
    )


def _counter_from_row(row: aiosqlite.Row) -> UsageCounter:
    return UsageCounter(
        shop_domain=row["shop_domain"],
        period=row["period"],
        metric=row["metric"],
        value=row["value"],
        limit=row["limit_value"],
        warning_80=bool(row["warning_80"]),
        warning_95=bool(row["warning_95"]),
    )


class Database:
    """Async database interface for the reward engine."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Shop operations
    async def upsert_shop(self, shop: Shop) -> None:
        """Create or replace an installed shop."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO shops (shop_domain, access_token, plan, is_active, installed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(shop_domain) DO UPDATE SET
                    access_token = excluded.access_token,
                    plan = excluded.plan,
                    is_active = excluded.is_active
                """,
                (
                    shop.shop_domain,
                    shop.access_token,
                    shop.plan,
                    1 if shop.is_active else 0,
                    shop.installed_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Saved shop {shop.shop_domain} on plan {shop.plan}")

    async def get_shop(self, shop_domain: str) -> Optional[Shop]:
        """Get an installed shop by domain."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM shops WHERE shop_domain = ?",
                (shop_domain,),
            )
            row = await cursor.fetchone()

            if row:
                return Shop(
                    shop_domain=row["shop_domain"],
                    access_token=row["access_token"],
                    plan=row["plan"],
                    is_active=bool(row["is_active"]),
                    installed_at=_dt(row["installed_at"]),
                )
            return None

    # Game configuration
    async def save_game_config(self, game_config: GameConfig) -> None:
        """Create or replace a shop's game configuration."""
        tiers = [t.model_dump(by_alias=True, exclude_none=True) for t in game_config.discount_tiers]
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO game_configs
                (shop_domain, is_enabled, max_plays_per_customer, max_plays_per_day,
                 discount_tiers, discount_expiry_hours, game_speed, difficulty, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    game_config.shop_domain,
                    1 if game_config.is_enabled else 0,
                    game_config.max_plays_per_customer,
                    game_config.max_plays_per_day,
                    json.dumps(tiers),
                    game_config.discount_expiry_hours,
                    game_config.game_speed,
                    game_config.difficulty,
                    utcnow().isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Saved game config for {game_config.shop_domain}")

    async def get_game_config(self, shop_domain: str) -> Optional[GameConfig]:
        """Get a shop's game configuration.

        Args:
            shop_domain: Shop to look up.

        Returns:
            GameConfig if configured, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM game_configs WHERE shop_domain = ?",
                (shop_domain,),
            )
            row = await cursor.fetchone()

            if row:
                return GameConfig(
                    shop_domain=row["shop_domain"],
                    is_enabled=bool(row["is_enabled"]),
                    max_plays_per_customer=row["max_plays_per_customer"],
                    max_plays_per_day=row["max_plays_per_day"],
                    discount_tiers=json.loads(row["discount_tiers"]),
                    discount_expiry_hours=row["discount_expiry_hours"],
                    game_speed=row["game_speed"],
                    difficulty=row["difficulty"],
                )
            return None

    # Session operations
    async def create_session(self, session: GameSession) -> None:
        """Create a play session record.

        Raises:
            sqlite3.IntegrityError: If the session id already exists.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO game_sessions
                (session_id, shop_domain, customer_id, customer_email, ip_address, user_agent,
                 source, referrer, started_at, ended_at, final_score, discount_earned,
                 discount_code, completed, game_data, ephemeral)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    session.shop_domain,
                    session.customer_id,
                    session.customer_email,
                    session.ip_address,
                    session.user_agent,
                    session.source,
                    session.referrer,
                    session.started_at.isoformat(),
                    _ts(session.ended_at),
                    session.final_score,
                    session.discount_earned,
                    session.discount_code,
                    1 if session.completed else 0,
                    json.dumps(session.game_data),
                    1 if session.ephemeral else 0,
                ),
            )
            await db.commit()
        logger.info(f"Created session: {session.session_id}")

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        """Get a play session by ID."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM game_sessions WHERE session_id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
            return _session_from_row(row) if row else None

    async def get_recent_sessions(self, shop_domain: str, limit: int = 100) -> list[GameSession]:
        """Get a shop's most recent sessions, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM game_sessions
                WHERE shop_domain = ?
                ORDER BY started_at DESC
                LIMIT ?
                """,
                (shop_domain, limit),
            )
            rows = await cursor.fetchall()
            return [_session_from_row(row) for row in rows]

    async def complete_session(
        self,
        session_id: str,
        final_score: int,
        discount_earned: int,
        discount_code: Optional[str] = None,
    ) -> bool:
        """Mark a pending session completed.

        Returns:
            True if the session transitioned, False if it was missing or already completed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE game_sessions
                SET completed = 1, ended_at = ?, final_score = ?,
                    discount_earned = ?, discount_code = ?
                WHERE session_id = ? AND completed = 0
                """,
                (utcnow().isoformat(), final_score, discount_earned, discount_code, session_id),
            )
            await db.commit()
            updated = cursor.rowcount == 1
        if updated:
            logger.info(f"Completed session {session_id} with score {final_score}")
        else:
            logger.warning(f"Session {session_id} not completed: missing or already completed")
        return updated

    # Scoring ledger and customer aggregates
    async def record_score(self, score: GameScore) -> None:
        """Append an entry to the scoring ledger."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO game_scores
                (shop_domain, session_id, score, discount_earned, discount_code,
                 customer_id, customer_email, game_data, achieved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    score.shop_domain,
                    score.session_id,
                    score.score,
                    score.discount_earned,
                    score.discount_code,
                    score.customer_id,
                    score.customer_email,
                    json.dumps(score.game_data),
                    score.achieved_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Recorded score {score.score} for session {score.session_id}")

    async def get_scores_by_session(self, session_id: str) -> list[GameScore]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM game_scores WHERE session_id = ? ORDER BY score_id",
                (session_id,),
            )
            rows = await cursor.fetchall()
            return [
                GameScore(
                    shop_domain=row["shop_domain"],
                    session_id=row["session_id"],
                    score=row["score"],
                    discount_earned=row["discount_earned"],
                    discount_code=row["discount_code"],
                    customer_id=row["customer_id"],
                    customer_email=row["customer_email"],
                    game_data=json.loads(row["game_data"] or "{}"),
                    achieved_at=_dt(row["achieved_at"]),
                )
                for row in rows
            ]

    async def update_customer_stats(
        self, shop_domain: str, identifier: str, score: int, discount_earned: int
    ) -> None:
        """Fold one finished game into the customer's aggregate, creating it on first play."""
        now = utcnow().isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO customers
                (shop_domain, identifier, total_sessions, total_score, best_score,
                 total_discounts_earned, first_played_at, last_played_at)
                VALUES (?, ?, 1, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_domain, identifier) DO UPDATE SET
                    total_sessions = total_sessions + 1,
                    total_score = total_score + excluded.total_score,
                    best_score = MAX(best_score, excluded.best_score),
                    total_discounts_earned = total_discounts_earned + excluded.total_discounts_earned,
                    last_played_at = excluded.last_played_at
                """,
                (shop_domain, identifier, score, score, discount_earned, now, now),
            )
            await db.commit()

    async def get_customer_stats(self, shop_domain: str, identifier: str) -> Optional[CustomerStats]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM customers WHERE shop_domain = ? AND identifier = ?",
                (shop_domain, identifier),
            )
            row = await cursor.fetchone()

            if row:
                return CustomerStats(
                    shop_domain=row["shop_domain"],
                    identifier=row["identifier"],
                    total_sessions=row["total_sessions"],
                    total_score=row["total_score"],
                    best_score=row["best_score"],
                    total_discounts_earned=row["total_discounts_earned"],
                    first_played_at=_dt(row["first_played_at"]),
                    last_played_at=_dt(row["last_played_at"]),
                )
            return None

    # Usage operations
    async def ensure_usage_period(self, shop_domain: str, period: str, limits: PlanLimits) -> None:
        """Create the period's counters from a plan limits snapshot if they do not exist yet."""
        now = utcnow().isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT OR IGNORE INTO usage_records
                (shop_domain, period, metric, value, limit_value, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                [
                    (shop_domain, period, metric, limit, now, now)
                    for metric, limit in limits.model_dump().items()
                ],
            )
            await db.commit()
        logger.debug(f"Usage period {period} ready for {shop_domain}")

    async def get_usage_counter(
        self, shop_domain: str, period: str, metric: str
    ) -> Optional[UsageCounter]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM usage_records
                WHERE shop_domain = ? AND period = ? AND metric = ?
                """,
                (shop_domain, period, metric),
            )
            row = await cursor.fetchone()
            return _counter_from_row(row) if row else None

    async def get_usage_record(self, shop_domain: str, period: str) -> Optional[UsageRecord]:
        """Get all of a shop's counters for a period."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM usage_records WHERE shop_domain = ? AND period = ?",
                (shop_domain, period),
            )
            rows = await cursor.fetchall()

        if not rows:
            return None
        counters = [_counter_from_row(row) for row in rows]
        return UsageRecord(
            shop_domain=shop_domain,
            period=period,
            counters={c.metric: c for c in counters},
        )

    async def increment_usage_counter(
        self, shop_domain: str, period: str, metric: str, delta: int
    ) -> Optional[UsageCounter]:
        """Atomically add ``delta`` to a counter unless that would exceed its limit.

        Returns:
            The updated counter, or None if the limit would be exceeded (counter unchanged).

        Raises:
            LookupError: If the period has not been initialized for the metric.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                UPDATE usage_records
                SET value = value + ?, updated_at = ?
                WHERE shop_domain = ? AND period = ? AND metric = ?
                  AND (limit_value = -1 OR value + ? <= limit_value)
                """,
                (delta, utcnow().isoformat(), shop_domain, period, metric, delta),
            )
            applied = cursor.rowcount == 1

            cursor = await db.execute(
                """
                SELECT * FROM usage_records
                WHERE shop_domain = ? AND period = ? AND metric = ?
                """,
                (shop_domain, period, metric),
            )
            row = await cursor.fetchone()
            await db.commit()

        if row is None:
            raise LookupError(f"Usage period {period} not initialized for {shop_domain}/{metric}")
        if not applied:
            logger.warning(
                f"Usage limit reached for {shop_domain}/{metric}: "
                f"{row['value']} + {delta} > {row['limit_value']}"
            )
            return None
        return _counter_from_row(row)

    async def flag_usage_warning(
        self, shop_domain: str, period: str, metric: str, threshold: int
    ) -> bool:
        """Set a warning flag the first time a counter reaches ``threshold`` percent of its limit.

        Returns:
            True if this call flipped the flag.
        """
        column = _WARNING_COLUMNS[threshold]
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE usage_records
                SET {column} = 1, updated_at = ?
                WHERE shop_domain = ? AND period = ? AND metric = ?
                  AND {column} = 0 AND limit_value > 0
                  AND value * 100 >= limit_value * ?
                """,
                (utcnow().isoformat(), shop_domain, period, metric, threshold),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def release_usage_counter(
        self, shop_domain: str, period: str, metric: str, delta: int
    ) -> None:
        """Give back ``delta`` units of a counter (never below zero)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE usage_records
                SET value = MAX(value - ?, 0), updated_at = ?
                WHERE shop_domain = ? AND period = ? AND metric = ?
                """,
                (delta, utcnow().isoformat(), shop_domain, period, metric),
            )
            await db.commit()
        logger.info(f"Released {delta} {metric} for {shop_domain} ({period})")

    # Discount ledger
    async def create_discount_code(self, discount: DiscountCode) -> bool:
        """Insert a ledger entry.

        Returns:
            True if created, False if the session already has a code or the code is taken.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO discount_codes
                    (shop_domain, code, session_id, value, type, price_rule_id, discount_code_id,
                     customer_id, customer_email, created_at, expires_at, is_used,
                     issuance_status, issuance_attempts, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        discount.shop_domain,
                        discount.code,
                        discount.session_id,
                        discount.value,
                        discount.type,
                        discount.price_rule_id,
                        discount.discount_code_id,
                        discount.customer_id,
                        discount.customer_email,
                        discount.created_at.isoformat(),
                        discount.expires_at.isoformat(),
                        1 if discount.is_used else 0,
                        discount.issuance_status,
                        discount.issuance_attempts,
                        discount.last_error,
                    ),
                )
                await db.commit()
            logger.info(f"Created discount ledger entry {discount.code} for session {discount.session_id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(
                f"Discount ledger entry rejected (duplicate): code={discount.code} "
                f"session={discount.session_id}"
            )
            return False

    async def get_discount_code(self, shop_domain: str, code: str) -> Optional[DiscountCode]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM discount_codes WHERE shop_domain = ? AND code = ?",
                (shop_domain, code),
            )
            row = await cursor.fetchone()
            return _discount_from_row(row) if row else None

    async def get_discount_code_by_session(self, session_id: str) -> Optional[DiscountCode]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM discount_codes WHERE session_id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
            return _discount_from_row(row) if row else None

    async def mark_discount_issued(
        self, shop_domain: str, code: str, price_rule_id: str, discount_code_id: str
    ) -> bool:
        """Record the external identifiers of a code the commerce platform accepted.

        Only a ``pending`` entry moves to ``issued``; an entry already given up stays failed.

        Returns:
            True if this call issued the entry.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE discount_codes
                SET issuance_status = 'issued', price_rule_id = ?, discount_code_id = ?,
                    issuance_attempts = issuance_attempts + 1, last_error = NULL
                WHERE shop_domain = ? AND code = ? AND issuance_status = 'pending'
                """,
                (price_rule_id, discount_code_id, shop_domain, code),
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if updated:
            logger.info(f"Discount {code} issued (price rule {price_rule_id})")
        else:
            logger.warning(f"Discount {code} was no longer pending, issuance not recorded")
        return updated

    async def record_issuance_failure(
        self,
        shop_domain: str,
        code: str,
        error_message: str,
        give_up: bool = False,
        price_rule_id: Optional[str] = None,
    ) -> bool:
        """Count a failed external creation attempt; ``give_up`` marks the entry failed.

        ``price_rule_id`` keeps a rule created before the failure so a retry can reuse it.

        Returns:
            True if the entry was still pending and has been updated.
        """
        status = "failed" if give_up else "pending"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE discount_codes
                SET issuance_status = ?, issuance_attempts = issuance_attempts + 1, last_error = ?,
                    price_rule_id = COALESCE(?, price_rule_id)
                WHERE shop_domain = ? AND code = ? AND issuance_status = 'pending'
                """,
                (status, error_message, price_rule_id, shop_domain, code),
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if updated:
            logger.warning(f"Discount {code} issuance attempt failed ({status}): {error_message}")
        else:
            logger.info(f"Discount {code} was no longer pending, failure not recorded")
        return updated

    async def get_pending_discount_codes(
        self, limit: int = 100, created_before: Optional[datetime] = None
    ) -> list[DiscountCode]:
        """Get ledger entries still waiting for external creation, oldest first.

        Args:
            limit: Maximum entries returned.
            created_before: Skip entries created at or after this time (finishes still in flight).
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM discount_codes
                WHERE issuance_status = 'pending' AND (? IS NULL OR created_at < ?)
                ORDER BY created_at
                LIMIT ?
                """,
                (_ts(created_before), _ts(created_before), limit),
            )
            rows = await cursor.fetchall()
            return [_discount_from_row(row) for row in rows]

    async def mark_discount_used(
        self,
        shop_domain: str,
        code: str,
        order_id: str,
        order_value: Optional[float] = None,
        discount_amount: Optional[float] = None,
        currency: Optional[str] = None,
    ) -> bool:
        """Mark an unused code redeemed by an order.

        Returns:
            True if this call redeemed the code, False if it was unknown or already used.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE discount_codes
                SET is_used = 1, used_at = ?, order_id = ?, order_value = ?,
                    discount_amount = ?, currency = ?
                WHERE shop_domain = ? AND code = ? AND is_used = 0
                """,
                (
                    utcnow().isoformat(),
                    order_id,
                    order_value,
                    discount_amount,
                    currency,
                    shop_domain,
                    code,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Notifications
    async def create_notification(self, notification: Notification) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO notifications
                (notification_id, shop_domain, type, title, message, priority,
                 is_read, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.notification_id,
                    notification.shop_domain,
                    notification.type,
                    notification.title,
                    notification.message,
                    notification.priority,
                    1 if notification.is_read else 0,
                    json.dumps(notification.metadata),
                    notification.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created {notification.type} notification for {notification.shop_domain}")

    async def get_notifications(self, shop_domain: str) -> list[Notification]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM notifications WHERE shop_domain = ? ORDER BY created_at DESC",
                (shop_domain,),
            )
            rows = await cursor.fetchall()
            return [
                Notification(
                    notification_id=row["notification_id"],
                    shop_domain=row["shop_domain"],
                    type=row["type"],
                    title=row["title"],
                    message=row["message"],
                    priority=row["priority"],
                    is_read=bool(row["is_read"]),
                    metadata=json.loads(row["metadata"] or "{}"),
                    created_at=_dt(row["created_at"]),
                )
                for row in rows
            ]

    # Webhook operations (idempotency)
    async def create_webhook_delivery(self, delivery: WebhookDelivery) -> bool:
        """Create a webhook delivery record for idempotency tracking.

        Returns:
            True if record was created (first time), False if duplicate.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO webhook_deliveries
                    (webhook_id, shop_domain, topic, status, received_at, processed_at, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delivery.webhook_id,
                        delivery.shop_domain,
                        delivery.topic,
                        delivery.status,
                        delivery.received_at.isoformat(),
                        _ts(delivery.processed_at),
                        delivery.error_message,
                    ),
                )
                await db.commit()
            logger.info(f"Created webhook delivery record: {delivery.webhook_id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Webhook delivery already exists (idempotency): {delivery.webhook_id}")
            return False

    async def get_webhook_delivery(self, webhook_id: str) -> Optional[WebhookDelivery]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM webhook_deliveries WHERE webhook_id = ?",
                (webhook_id,),
            )
            row = await cursor.fetchone()

            if row:
                return WebhookDelivery(
                    webhook_id=row["webhook_id"],
                    shop_domain=row["shop_domain"],
                    topic=row["topic"],
                    status=row["status"],
                    received_at=_dt(row["received_at"]),
                    processed_at=_dt(row["processed_at"]),
                    error_message=row["error_message"],
                )
            return None

    async def update_webhook_status(
        self,
        webhook_id: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Update webhook processing status."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE webhook_deliveries
                SET status = ?, processed_at = ?, error_message = ?
                WHERE webhook_id = ?
                """,
                (status, utcnow().isoformat(), error_message, webhook_id),
            )
            await db.commit()
        logger.info(f"Updated webhook {webhook_id} status to {status}")


# Global database instance
db = Database()
