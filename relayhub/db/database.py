"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.

The schema is stamped with PRAGMA user_version on creation. This build does not run
compatibility migrations: a database stamped by another version, or one missing a
required table, is refused at startup.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from relayhub.config import DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
REQUIRED_TABLES = ("sessions", "machines", "messages", "users", "push_subscriptions")

_REMEDIATION = (
    "Back up and rebuild the database, or run an offline migration to the expected schema version."
)

# Module-level connection pool (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


class SchemaMismatchError(RuntimeError):
    """Raised when the database was created by an incompatible build or is missing tables."""


def _is_memory(path: str) -> bool:
    return path == ":memory:" or path.startswith("file::memory:")


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await open_db(DB_PATH)
    return _db


async def open_db(path: str) -> aiosqlite.Connection:
    """Open a connection at `path`, apply pragmas and verify or create the schema."""
    if not _is_memory(path):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    try:
        # WAL mode: allows concurrent reads while writing
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA synchronous=NORMAL")
        await db.execute("PRAGMA foreign_keys=ON")
        await db.execute("PRAGMA busy_timeout=5000")
        await init_schema(db, path)
    except BaseException:
        await db.close()
        raise
    logger.info(f"Database initialized at {path}")
    return db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection, path: str = ":memory:") -> None:
    """Create the schema on a fresh database, or verify an existing one."""
    current = await _get_user_version(db)
    if current == 0:
        if await _has_any_user_tables(db):
            # Pre-versioning database: adopt it only if it already holds every required table.
            await _assert_required_tables(db)
            await _set_user_version(db, SCHEMA_VERSION)
            logger.info(f"Stamped existing database with schema version {SCHEMA_VERSION}")
        else:
            await _create_schema(db)
            await _set_user_version(db, SCHEMA_VERSION)
            logger.info("Schema initialized.")
        return

    if current != SCHEMA_VERSION:
        location = "in-memory database" if _is_memory(path) else path
        raise SchemaMismatchError(
            f"SQLite schema version mismatch for {location}. "
            f"Expected {SCHEMA_VERSION}, found {current}. "
            "This build does not run compatibility migrations. " + _REMEDIATION
        )

    await _assert_required_tables(db)


async def _create_schema(db: aiosqlite.Connection) -> None:
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Session: one coding-agent conversation
        -- `seq` is bumped on every persisted mutation of the session.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS sessions (
            id                  TEXT PRIMARY KEY,
            tag                 TEXT,
            namespace           TEXT NOT NULL DEFAULT 'default',
            machine_id          TEXT,
            created_at          TEXT NOT NULL,
            updated_at          TEXT NOT NULL,
            metadata            TEXT,
            metadata_version    INTEGER NOT NULL DEFAULT 1,
            agent_state         TEXT,
            agent_state_version INTEGER NOT NULL DEFAULT 1,
            active              INTEGER NOT NULL DEFAULT 0,
            active_at           TEXT,
            seq                 INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_namespace ON sessions(namespace);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_tag_namespace
            ON sessions(tag, namespace) WHERE tag IS NOT NULL;

        -- ----------------------------------------------------------------
        -- Machine: a host running CLI agent processes
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS machines (
            id                   TEXT PRIMARY KEY,
            namespace            TEXT NOT NULL DEFAULT 'default',
            created_at           TEXT NOT NULL,
            updated_at           TEXT NOT NULL,
            metadata             TEXT,
            metadata_version     INTEGER NOT NULL DEFAULT 1,
            daemon_state         TEXT,
            daemon_state_version INTEGER NOT NULL DEFAULT 1,
            active               INTEGER NOT NULL DEFAULT 0,
            active_at            TEXT,
            seq                  INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_machines_namespace ON machines(namespace);

        -- ----------------------------------------------------------------
        -- Message: one immutable conversation turn
        -- `seq` is per-session, gap-free and assigned at insert time.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id          TEXT PRIMARY KEY,
            session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            content     TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            seq         INTEGER NOT NULL,
            local_id    TEXT
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_local_id
            ON messages(session_id, local_id) WHERE local_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS users (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            platform         TEXT NOT NULL,
            platform_user_id TEXT NOT NULL,
            namespace        TEXT NOT NULL DEFAULT 'default',
            created_at       TEXT NOT NULL,
            UNIQUE(platform, platform_user_id)
        );
        CREATE INDEX IF NOT EXISTS idx_users_platform_namespace ON users(platform, namespace);

        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            namespace   TEXT NOT NULL,
            endpoint    TEXT NOT NULL,
            p256dh      TEXT NOT NULL,
            auth        TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            UNIQUE(namespace, endpoint)
        );
        CREATE INDEX IF NOT EXISTS idx_push_subscriptions_namespace ON push_subscriptions(namespace);
    """)
    await db.commit()


async def _get_user_version(db: aiosqlite.Connection) -> int:
    async with db.execute("PRAGMA user_version") as cur:
        row = await cur.fetchone()
    return row[0] if row else 0


async def _set_user_version(db: aiosqlite.Connection, version: int) -> None:
    await db.execute(f"PRAGMA user_version = {int(version)}")
    await db.commit()


async def _has_any_user_tables(db: aiosqlite.Connection) -> bool:
    async with db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' LIMIT 1"
    ) as cur:
        row = await cur.fetchone()
    return row is not None


async def _assert_required_tables(db: aiosqlite.Connection) -> None:
    placeholders = ", ".join("?" for _ in REQUIRED_TABLES)
    async with db.execute(
        f"SELECT name FROM sqlite_master WHERE type = 'table' AND name IN ({placeholders})",
        REQUIRED_TABLES,
    ) as cur:
        existing = {row["name"] for row in await cur.fetchall()}
    missing = [t for t in REQUIRED_TABLES if t not in existing]
    if missing:
        raise SchemaMismatchError(
            f"SQLite schema is missing required tables ({', '.join(missing)}). " + _REMEDIATION
        )
