"""
SQLite Ledger Store

Process-local implementation of LedgerStore on aiosqlite. Ids are SQLite
INTEGER PRIMARY KEY AUTOINCREMENT values, exposed to callers as decimal
strings ("1", "2", ...).

Defaults to ":memory:", which keeps the whole ledger inside the process;
pass a file path to persist it.

Tables:
  - users, startups, investments, updates, milestones
  - ledger_schema_migrations: Track applied migrations

Every mutation runs inside transaction(), which holds an asyncio.Lock for
the duration of BEGIN..COMMIT. Id allocation and the row insert therefore
happen atomically, and multi-row operations (cascading user delete,
funding reconciliation) are all-or-nothing.

Usage:
    store = SQLiteLedgerStore(":memory:")
    await store.initialize()

    user = await store.create_user(NewUser(
        username="ada", password="<hash>", email="ada@example.com",
        role=UserRole.STARTUP,
    ))
    startup = await store.create_startup(NewStartup(user_id=user.id, ...))
    await store.update_startup_funding(startup.id, 1.5)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiosqlite

from storage.base import LedgerStore, check_foreign_key, utcnow
from storage.identifiers import IntegerIdResolver
from storage.models import (
    EntityKind,
    Investment,
    Milestone,
    NewInvestment,
    NewMilestone,
    NewStartup,
    NewUpdate,
    NewUser,
    Startup,
    Update,
    User,
    UserRole,
    normalize_wallet_address,
)
from utils.errors import (
    Conflict,
    ConflictReason,
    InvalidInput,
    Mismatch,
    NotFound,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SCHEMA VERSION
# =============================================================================

CURRENT_SCHEMA_VERSION = 2

MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        wallet_address TEXT UNIQUE,  -- lower-cased, NULL when unset
        wallet_confirmed INTEGER NOT NULL DEFAULT 0,
        role TEXT NOT NULL CHECK (role IN ('investor', 'startup')),
        created_at TEXT NOT NULL  -- ISO 8601, UTC
    );

    CREATE TABLE IF NOT EXISTS startups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,  -- one startup per user
        name TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL,
        funding_stage TEXT NOT NULL,
        location TEXT,
        funding_goal REAL NOT NULL,
        current_funding REAL NOT NULL DEFAULT 0,
        logo TEXT NOT NULL,
        photo TEXT,
        video TEXT,
        upi_id TEXT,
        upi_qr TEXT,
        pitch_deck TEXT,
        investment_terms TEXT,
        technical_whitepaper TEXT,
        funding_end_date TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,

        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_startups_created_at ON startups(created_at);

    -- startup_id carries no FK: investments made by other users survive the
    -- removal of the startup they funded.
    CREATE TABLE IF NOT EXISTS investments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        investor_id INTEGER NOT NULL,
        startup_id INTEGER NOT NULL,
        amount REAL NOT NULL CHECK (amount > 0),
        transaction_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,

        FOREIGN KEY (investor_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_investments_investor_id ON investments(investor_id);
    CREATE INDEX IF NOT EXISTS idx_investments_startup_id ON investments(startup_id);
    CREATE INDEX IF NOT EXISTS idx_investments_transaction_hash ON investments(transaction_hash);

    CREATE TABLE IF NOT EXISTS updates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        startup_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,

        FOREIGN KEY (startup_id) REFERENCES startups(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_updates_startup_id ON updates(startup_id);

    CREATE TABLE IF NOT EXISTS milestones (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        startup_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        target_date TEXT,
        completed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,

        FOREIGN KEY (startup_id) REFERENCES startups(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_milestones_startup_id ON milestones(startup_id);

    CREATE TABLE IF NOT EXISTS ledger_schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );
    """,
    2: """
    -- One investment per external transfer
    DROP INDEX IF EXISTS idx_investments_transaction_hash;
    CREATE UNIQUE INDEX IF NOT EXISTS idx_investments_transaction_hash
        ON investments(transaction_hash);
    """,
}

ORDER_BY = {
    EntityKind.USER: "id ASC",
    EntityKind.STARTUP: "created_at DESC, id DESC",
    EntityKind.INVESTMENT: "created_at DESC, id DESC",
    EntityKind.UPDATE: "created_at DESC, id DESC",
    EntityKind.MILESTONE: "target_date IS NULL, target_date ASC, created_at ASC, id ASC",
}

STARTUP_COLUMNS = (
    "user_id", "name", "description", "category", "funding_stage", "location",
    "funding_goal", "logo", "photo", "video", "upi_id", "upi_qr", "pitch_deck",
    "investment_terms", "technical_whitepaper", "funding_end_date", "active",
)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        password=row["password"],
        email=row["email"],
        role=UserRole(row["role"]),
        created_at=_from_iso(row["created_at"]),
        wallet_address=row["wallet_address"],
        wallet_confirmed=bool(row["wallet_confirmed"]),
    )


def _row_to_startup(row: aiosqlite.Row) -> Startup:
    return Startup(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        description=row["description"],
        category=row["category"],
        funding_stage=row["funding_stage"],
        funding_goal=row["funding_goal"],
        logo=row["logo"],
        created_at=_from_iso(row["created_at"]),
        current_funding=row["current_funding"],
        location=row["location"],
        photo=row["photo"],
        video=row["video"],
        upi_id=row["upi_id"],
        upi_qr=row["upi_qr"],
        pitch_deck=row["pitch_deck"],
        investment_terms=row["investment_terms"],
        technical_whitepaper=row["technical_whitepaper"],
        funding_end_date=_from_iso(row["funding_end_date"]),
        active=bool(row["active"]),
    )


def _row_to_investment(row: aiosqlite.Row) -> Investment:
    return Investment(
        id=str(row["id"]),
        investor_id=str(row["investor_id"]),
        startup_id=str(row["startup_id"]),
        amount=row["amount"],
        transaction_hash=row["transaction_hash"],
        created_at=_from_iso(row["created_at"]),
    )


def _row_to_update(row: aiosqlite.Row) -> Update:
    return Update(
        id=str(row["id"]),
        startup_id=str(row["startup_id"]),
        title=row["title"],
        content=row["content"],
        created_at=_from_iso(row["created_at"]),
    )


def _row_to_milestone(row: aiosqlite.Row) -> Milestone:
    return Milestone(
        id=str(row["id"]),
        startup_id=str(row["startup_id"]),
        title=row["title"],
        created_at=_from_iso(row["created_at"]),
        description=row["description"],
        target_date=_from_iso(row["target_date"]),
        completed=bool(row["completed"]),
    )


ROW_MAPPERS: Dict[EntityKind, Callable[[aiosqlite.Row], Any]] = {
    EntityKind.USER: _row_to_user,
    EntityKind.STARTUP: _row_to_startup,
    EntityKind.INVESTMENT: _row_to_investment,
    EntityKind.UPDATE: _row_to_update,
    EntityKind.MILESTONE: _row_to_milestone,
}


# =============================================================================
# SQLITE LEDGER STORE
# =============================================================================

class SQLiteLedgerStore(LedgerStore):
    """
    Async SQLite storage for the ledger.

    Features:
    - Automatic schema migrations
    - Lock-serialized transactions for every mutation
    - Integer ids rendered as strings at the boundary
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path = ":memory:"):
        """
        Initialize ledger store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        self.ids = IntegerIdResolver()
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    async def initialize(self) -> None:
        """
        Initialize database connection and apply migrations.
        Should be called once at startup.
        """
        if not self.in_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        if not self.in_memory:
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._apply_migrations()

        logger.info(f"SQLiteLedgerStore initialized: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Context manager for transactions.

        Usage:
            async with store.transaction() as conn:
                await conn.execute(...)
                await conn.execute(...)
                # Commits on success, rolls back on exception
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._lock:
            try:
                await self._db.execute("BEGIN")
                yield self._db
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise

    # =========================================================================
    # MIGRATIONS
    # =========================================================================

    async def _apply_migrations(self) -> None:
        """Apply pending schema migrations."""
        if not self._db:
            raise RuntimeError("Database not initialized")

        try:
            cursor = await self._db.execute(
                "SELECT MAX(version) FROM ledger_schema_migrations"
            )
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist yet
            current_version = 0

        for version in sorted(MIGRATIONS.keys()):
            if version <= current_version:
                continue

            logger.info(f"Applying ledger migration v{version}...")

            await self._db.executescript(MIGRATIONS[version])
            async with self.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO ledger_schema_migrations (version, applied_at, description)
                    VALUES (?, ?, ?)
                    """,
                    (version, _to_iso(utcnow()), f"Ledger schema version {version}"),
                )

            logger.info(f"Ledger migration v{version} applied successfully")

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _fetch_all(self, query: str, params: tuple = ()) -> List[aiosqlite.Row]:
        """Run a read outside any transaction, serialized with writers."""
        if not self._db:
            raise RuntimeError("Database not initialized")

        async with self._lock:
            cursor = await self._db.execute(query, params)
            return list(await cursor.fetchall())

    @staticmethod
    async def _fetch_one(
        conn: aiosqlite.Connection, query: str, params: tuple = ()
    ) -> Optional[aiosqlite.Row]:
        cursor = await conn.execute(query, params)
        return await cursor.fetchone()

    async def _require(
        self, conn: aiosqlite.Connection, kind: EntityKind, raw_id: Any
    ) -> aiosqlite.Row:
        """Load a row inside a transaction or raise NotFound."""
        native = self.ids.resolve(raw_id)
        row = await self._fetch_one(
            conn, f"SELECT * FROM {kind.value} WHERE id = ?", (native,)
        )
        if row is None:
            raise NotFound(kind.label, raw_id)
        return row

    @staticmethod
    async def _recompute_funding(conn: aiosqlite.Connection, startup_id: int) -> None:
        await conn.execute(
            """
            UPDATE startups
            SET current_funding = (
                SELECT COALESCE(SUM(amount), 0) FROM investments WHERE startup_id = ?
            )
            WHERE id = ?
            """,
            (startup_id, startup_id),
        )

    # =========================================================================
    # GENERIC OPERATIONS
    # =========================================================================

    async def get_by_id(self, kind: EntityKind, entity_id: Any) -> Optional[Any]:
        native = self.ids.resolve(entity_id)
        rows = await self._fetch_all(
            f"SELECT * FROM {kind.value} WHERE id = ?", (native,)
        )
        return ROW_MAPPERS[kind](rows[0]) if rows else None

    async def list_all(self, kind: EntityKind) -> List[Any]:
        rows = await self._fetch_all(
            f"SELECT * FROM {kind.value} ORDER BY {ORDER_BY[kind]}"
        )
        return [ROW_MAPPERS[kind](row) for row in rows]

    async def list_by_foreign_key(
        self, kind: EntityKind, field_name: str, value: Any
    ) -> List[Any]:
        check_foreign_key(kind, field_name)
        native = self.ids.resolve(value)
        rows = await self._fetch_all(
            f"SELECT * FROM {kind.value} WHERE {field_name} = ? ORDER BY {ORDER_BY[kind]}",
            (native,),
        )
        return [ROW_MAPPERS[kind](row) for row in rows]

    async def count(self, kind: EntityKind) -> int:
        rows = await self._fetch_all(f"SELECT COUNT(*) FROM {kind.value}")
        return rows[0][0] if rows else 0

    # =========================================================================
    # USERS
    # =========================================================================

    async def create_user(self, new_user: NewUser) -> User:
        async with self.transaction() as conn:
            if await self._fetch_one(
                conn, "SELECT 1 FROM users WHERE username = ?", (new_user.username,)
            ):
                raise Conflict(ConflictReason.USERNAME, "Username already exists")

            if await self._fetch_one(
                conn, "SELECT 1 FROM users WHERE email = ?", (new_user.email,)
            ):
                raise Conflict(ConflictReason.EMAIL, "Email already exists")

            if new_user.wallet_address and await self._fetch_one(
                conn,
                "SELECT 1 FROM users WHERE wallet_address = ?",
                (new_user.wallet_address,),
            ):
                raise Conflict(
                    ConflictReason.WALLET, "Wallet address already in use by another account"
                )

            cursor = await conn.execute(
                """
                INSERT INTO users (
                    username, password, email, wallet_address,
                    wallet_confirmed, role, created_at
                )
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    new_user.username,
                    new_user.password,
                    new_user.email,
                    new_user.wallet_address,
                    new_user.role.value,
                    _to_iso(utcnow()),
                ),
            )
            row = await self._require(conn, EntityKind.USER, cursor.lastrowid)

        logger.debug(f"Created user {row['id']} ({new_user.role.value})")
        return _row_to_user(row)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        rows = await self._fetch_all("SELECT * FROM users WHERE username = ?", (username,))
        return _row_to_user(rows[0]) if rows else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        rows = await self._fetch_all("SELECT * FROM users WHERE email = ?", (email,))
        return _row_to_user(rows[0]) if rows else None

    async def update_user_wallet_address(self, user_id: Any, address: str) -> User:
        address = normalize_wallet_address(address)

        async with self.transaction() as conn:
            user = await self._require(conn, EntityKind.USER, user_id)

            if user["wallet_confirmed"]:
                raise Conflict(
                    ConflictReason.WALLET_CONFIRMED,
                    "Wallet address has already been confirmed and cannot be changed",
                )

            if await self._fetch_one(
                conn,
                "SELECT 1 FROM users WHERE wallet_address = ? AND id != ?",
                (address, user["id"]),
            ):
                raise Conflict(
                    ConflictReason.WALLET, "Wallet address already in use by another account"
                )

            await conn.execute(
                "UPDATE users SET wallet_address = ? WHERE id = ?", (address, user["id"])
            )
            row = await self._require(conn, EntityKind.USER, user["id"])

        logger.info(f"Wallet address updated for user {row['id']}")
        return _row_to_user(row)

    async def confirm_user_wallet_address(self, user_id: Any, address: str) -> User:
        address = normalize_wallet_address(address)

        async with self.transaction() as conn:
            user = await self._require(conn, EntityKind.USER, user_id)

            if user["wallet_address"] != address:
                raise Mismatch("Wallet address does not match the stored address")

            if user["wallet_confirmed"]:
                raise Conflict(
                    ConflictReason.WALLET_CONFIRMED, "Wallet address has already been confirmed"
                )

            await conn.execute(
                "UPDATE users SET wallet_confirmed = 1 WHERE id = ?", (user["id"],)
            )
            row = await self._require(conn, EntityKind.USER, user["id"])

        logger.info(f"Wallet address confirmed for user {row['id']}")
        return _row_to_user(row)

    async def delete_user(self, user_id: Any) -> None:
        async with self.transaction() as conn:
            user = await self._require(conn, EntityKind.USER, user_id)
            uid = user["id"]

            owned = await self._fetch_one(
                conn, "SELECT id FROM startups WHERE user_id = ?", (uid,)
            )
            cursor = await conn.execute(
                "SELECT DISTINCT startup_id FROM investments WHERE investor_id = ?", (uid,)
            )
            funded = {row[0] for row in await cursor.fetchall()}

            if owned is not None:
                sid = owned["id"]
                await conn.execute("DELETE FROM updates WHERE startup_id = ?", (sid,))
                await conn.execute("DELETE FROM milestones WHERE startup_id = ?", (sid,))
                await conn.execute("DELETE FROM startups WHERE id = ?", (sid,))
                funded.discard(sid)

            await conn.execute("DELETE FROM investments WHERE investor_id = ?", (uid,))

            for sid in funded:
                await self._recompute_funding(conn, sid)

            await conn.execute("DELETE FROM users WHERE id = ?", (uid,))

        logger.info(
            f"Deleted user {uid} (startup={'yes' if owned else 'no'}, "
            f"reconciled {len(funded)} funded startups)"
        )

    # =========================================================================
    # STARTUPS
    # =========================================================================

    async def create_startup(self, new_startup: NewStartup) -> Startup:
        async with self.transaction() as conn:
            owner = await self._require(conn, EntityKind.USER, new_startup.user_id)

            if await self._fetch_one(
                conn, "SELECT 1 FROM startups WHERE user_id = ?", (owner["id"],)
            ):
                raise Conflict(
                    ConflictReason.STARTUP_OWNER, "User already owns a startup profile"
                )

            values = {name: getattr(new_startup, name) for name in STARTUP_COLUMNS}
            values["user_id"] = owner["id"]
            values["funding_end_date"] = _to_iso(new_startup.funding_end_date)
            values["active"] = 1 if new_startup.active else 0

            columns = ", ".join(STARTUP_COLUMNS)
            placeholders = ", ".join("?" for _ in STARTUP_COLUMNS)
            cursor = await conn.execute(
                f"""
                INSERT INTO startups ({columns}, current_funding, created_at)
                VALUES ({placeholders}, 0, ?)
                """,
                (*(values[name] for name in STARTUP_COLUMNS), _to_iso(utcnow())),
            )
            row = await self._require(conn, EntityKind.STARTUP, cursor.lastrowid)

        logger.debug(f"Created startup {row['id']} for user {owner['id']}")
        return _row_to_startup(row)

    async def update_startup_funding(self, startup_id: Any, delta: float) -> Startup:
        async with self.transaction() as conn:
            startup = await self._require(conn, EntityKind.STARTUP, startup_id)

            if startup["current_funding"] + delta < 0:
                raise InvalidInput(
                    f"Funding of startup {startup['id']} cannot go below zero"
                )

            await conn.execute(
                "UPDATE startups SET current_funding = current_funding + ? WHERE id = ?",
                (delta, startup["id"]),
            )
            row = await self._require(conn, EntityKind.STARTUP, startup["id"])

        logger.debug(f"Startup {row['id']} funding += {delta} -> {row['current_funding']}")
        return _row_to_startup(row)

    async def reconcile_startup_funding(self, startup_id: Any) -> Startup:
        async with self.transaction() as conn:
            startup = await self._require(conn, EntityKind.STARTUP, startup_id)
            await self._recompute_funding(conn, startup["id"])
            row = await self._require(conn, EntityKind.STARTUP, startup["id"])

        return _row_to_startup(row)

    async def sum_startup_investments(self, startup_id: Any) -> float:
        native = self.ids.resolve(startup_id)
        rows = await self._fetch_all(
            "SELECT COALESCE(SUM(amount), 0) FROM investments WHERE startup_id = ?",
            (native,),
        )
        return float(rows[0][0]) if rows else 0.0

    # =========================================================================
    # INVESTMENTS
    # =========================================================================

    async def create_investment(self, new_investment: NewInvestment) -> Investment:
        async with self.transaction() as conn:
            investor = await self._require(conn, EntityKind.USER, new_investment.investor_id)
            startup = await self._require(conn, EntityKind.STARTUP, new_investment.startup_id)

            if await self._fetch_one(
                conn,
                "SELECT 1 FROM investments WHERE transaction_hash = ?",
                (new_investment.transaction_hash,),
            ):
                raise Conflict(
                    ConflictReason.TRANSACTION,
                    f"Transaction {new_investment.transaction_hash} is already recorded",
                )

            cursor = await conn.execute(
                """
                INSERT INTO investments (
                    investor_id, startup_id, amount, transaction_hash, created_at
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    investor["id"],
                    startup["id"],
                    new_investment.amount,
                    new_investment.transaction_hash,
                    _to_iso(utcnow()),
                ),
            )
            row = await self._require(conn, EntityKind.INVESTMENT, cursor.lastrowid)

        logger.debug(
            f"Recorded investment {row['id']}: {row['amount']} "
            f"from user {row['investor_id']} into startup {row['startup_id']}"
        )
        return _row_to_investment(row)

    async def find_investment_by_transaction(
        self, transaction_hash: str
    ) -> Optional[Investment]:
        rows = await self._fetch_all(
            "SELECT * FROM investments WHERE transaction_hash = ? ORDER BY id ASC LIMIT 1",
            (transaction_hash,),
        )
        return _row_to_investment(rows[0]) if rows else None

    # =========================================================================
    # UPDATES / MILESTONES
    # =========================================================================

    async def create_update(self, new_update: NewUpdate) -> Update:
        async with self.transaction() as conn:
            startup = await self._require(conn, EntityKind.STARTUP, new_update.startup_id)
            cursor = await conn.execute(
                """
                INSERT INTO updates (startup_id, title, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (startup["id"], new_update.title, new_update.content, _to_iso(utcnow())),
            )
            row = await self._require(conn, EntityKind.UPDATE, cursor.lastrowid)

        return _row_to_update(row)

    async def create_milestone(self, new_milestone: NewMilestone) -> Milestone:
        async with self.transaction() as conn:
            startup = await self._require(conn, EntityKind.STARTUP, new_milestone.startup_id)
            cursor = await conn.execute(
                """
                INSERT INTO milestones (
                    startup_id, title, description, target_date, completed, created_at
                )
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (
                    startup["id"],
                    new_milestone.title,
                    new_milestone.description,
                    _to_iso(new_milestone.target_date),
                    _to_iso(utcnow()),
                ),
            )
            row = await self._require(conn, EntityKind.MILESTONE, cursor.lastrowid)

        return _row_to_milestone(row)

    async def update_milestone_status(self, milestone_id: Any, completed: bool) -> Milestone:
        async with self.transaction() as conn:
            milestone = await self._require(conn, EntityKind.MILESTONE, milestone_id)
            await conn.execute(
                "UPDATE milestones SET completed = ? WHERE id = ?",
                (1 if completed else 0, milestone["id"]),
            )
            row = await self._require(conn, EntityKind.MILESTONE, milestone["id"])

        return _row_to_milestone(row)
