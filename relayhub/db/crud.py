"""
CRUD operations for RelayHub.
All functions are async and receive the aiosqlite connection from the caller.

Updates to versioned columns are compare-and-swap: a single UPDATE guarded by the
expected version. Mismatches are returned as VersionedUpdateResult, never raised.

Every coroutine shares one connection, hence one transaction. Each write holds the
connection's write lock from its first statement through its commit or rollback, so
no write can commit or roll back another one's uncommitted work.
"""
import asyncio
import json
import uuid
import logging
import sqlite3
import weakref
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from relayhub.db.models import (
    Session, Machine, Message, User, PushSubscription, VersionedUpdateResult, MergeResult,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    """Return the lock serializing write transactions on `db`. Not reentrant."""
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock


class NamespaceConflictError(Exception):
    """Raised when an entity id already exists under a different namespace."""

    def __init__(self, kind: str, entity_id: str, namespace: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.namespace = namespace
        super().__init__(f"{kind} '{entity_id}' already exists in another namespace (requested '{namespace}')")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("Stored JSON column could not be decoded; treating as null")
        return None


def _clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return MAX_PAGE_SIZE
    return max(1, min(MAX_PAGE_SIZE, int(limit)))


# ─────────────────────────────────────────────
# Compare-and-swap helper
# ─────────────────────────────────────────────

# (table, value column, version column) pairs that may be updated with CAS.
_VERSIONED_COLUMNS = {
    ("sessions", "metadata", "metadata_version"),
    ("sessions", "agent_state", "agent_state_version"),
    ("machines", "metadata", "metadata_version"),
    ("machines", "daemon_state", "daemon_state_version"),
}


async def _versioned_update(
    db: aiosqlite.Connection,
    table: str,
    column: str,
    version_column: str,
    entity_id: str,
    value: Any,
    expected_version: int,
    namespace: str,
) -> VersionedUpdateResult:
    if (table, column, version_column) not in _VERSIONED_COLUMNS:
        raise ValueError(f"Column {table}.{column} is not versioned")

    async with write_lock(db):
        async with db.execute(
            f"UPDATE {table} SET {column} = ?, {version_column} = {version_column} + 1, "
            f"updated_at = ?, seq = seq + 1 "
            f"WHERE id = ? AND namespace = ? AND {version_column} = ?",
            (_dumps(value), _now(), entity_id, namespace, expected_version),
        ) as cur:
            updated = cur.rowcount
        await db.commit()

    if updated == 1:
        return VersionedUpdateResult(ok=True, version=expected_version + 1, value=value)

    async with db.execute(
        f"SELECT {column}, {version_column} FROM {table} WHERE id = ? AND namespace = ?",
        (entity_id, namespace),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return VersionedUpdateResult(ok=False, reason="not-found")
    return VersionedUpdateResult(
        ok=False, reason="version-mismatch", version=row[version_column], value=_loads(row[column]),
    )


# ─────────────────────────────────────────────
# Session CRUD
# ─────────────────────────────────────────────

async def session_get_or_create(
    db: aiosqlite.Connection,
    tag: Optional[str],
    metadata: Any,
    agent_state: Any,
    namespace: str,
    machine_id: Optional[str] = None,
) -> Session:
    """Find the session with this tag in the namespace, or create it.

    Tags are scoped by namespace: the same tag in two namespaces yields two sessions.
    A session without a tag is always created fresh.
    """
    sid = str(uuid.uuid4())
    now = _now()
    async with write_lock(db):
        if tag:
            existing = await _session_by_tag(db, tag, namespace)
            if existing is not None:
                return existing
        try:
            await db.execute(
                "INSERT INTO sessions (id, tag, namespace, machine_id, created_at, updated_at, metadata, "
                "metadata_version, agent_state, agent_state_version, active, active_at, seq) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, 1, 0, NULL, 0)",
                (sid, tag, namespace, machine_id, now, now, _dumps(metadata), _dumps(agent_state)),
            )
            await db.commit()
        except sqlite3.IntegrityError as e:
            # UNIQUE(tag, namespace) violation: another process created it concurrently
            await db.rollback()
            logger.info(f"Session tag '{tag}' creation raced (UNIQUE constraint), fetching existing: {e}")
            existing = await _session_by_tag(db, tag, namespace) if tag else None
            if existing is not None:
                return existing
            raise

    logger.info(f"Session created: {sid} tag={tag!r} namespace={namespace!r}")
    session = await session_get(db, sid)
    if session is None:
        raise RuntimeError(f"Failed to read back session {sid}")
    return session


async def _session_by_tag(db: aiosqlite.Connection, tag: str, namespace: str) -> Optional[Session]:
    async with db.execute(
        "SELECT * FROM sessions WHERE tag = ? AND namespace = ? LIMIT 1", (tag, namespace)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_session(row) if row else None


async def session_get(db: aiosqlite.Connection, session_id: str) -> Optional[Session]:
    async with db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_session(row) if row else None


async def session_get_by_namespace(db: aiosqlite.Connection, session_id: str, namespace: str) -> Optional[Session]:
    async with db.execute(
        "SELECT * FROM sessions WHERE id = ? AND namespace = ?", (session_id, namespace)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_session(row) if row else None


async def session_list(db: aiosqlite.Connection) -> list[Session]:
    async with db.execute("SELECT * FROM sessions ORDER BY updated_at DESC") as cur:
        rows = await cur.fetchall()
    return [_row_to_session(r) for r in rows]


async def session_list_by_namespace(db: aiosqlite.Connection, namespace: str) -> list[Session]:
    async with db.execute(
        "SELECT * FROM sessions WHERE namespace = ? ORDER BY updated_at DESC", (namespace,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_session(r) for r in rows]


async def session_update_metadata(
    db: aiosqlite.Connection, session_id: str, metadata: Any, expected_version: int, namespace: str,
) -> VersionedUpdateResult:
    return await _versioned_update(
        db, "sessions", "metadata", "metadata_version", session_id, metadata, expected_version, namespace,
    )


async def session_update_agent_state(
    db: aiosqlite.Connection, session_id: str, agent_state: Any, expected_version: int, namespace: str,
) -> VersionedUpdateResult:
    return await _versioned_update(
        db, "sessions", "agent_state", "agent_state_version", session_id, agent_state, expected_version, namespace,
    )


async def session_set_active(
    db: aiosqlite.Connection, session_id: str, namespace: str, active: bool,
) -> Optional[Session]:
    """Mark a session as owned (or released) by an agent process. Returns None if not found."""
    now = _now()
    async with write_lock(db):
        async with db.execute(
            "UPDATE sessions SET active = ?, active_at = CASE WHEN ? THEN ? ELSE active_at END, updated_at = ? "
            "WHERE id = ? AND namespace = ?",
            (1 if active else 0, 1 if active else 0, now, now, session_id, namespace),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    if updated == 0:
        return None
    return await session_get(db, session_id)


async def session_delete(db: aiosqlite.Connection, session_id: str, namespace: str) -> bool:
    """Delete a session and (by cascade) its messages."""
    async with write_lock(db):
        async with db.execute(
            "DELETE FROM sessions WHERE id = ? AND namespace = ?", (session_id, namespace)
        ) as cur:
            deleted = cur.rowcount
        await db.commit()
    if deleted:
        logger.info(f"Session deleted: {session_id}")
    return deleted > 0


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        namespace=row["namespace"],
        tag=row["tag"],
        machine_id=row["machine_id"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        active=bool(row["active"]),
        active_at=_parse_dt(row["active_at"]),
        metadata=_loads(row["metadata"]),
        metadata_version=row["metadata_version"],
        agent_state=_loads(row["agent_state"]),
        agent_state_version=row["agent_state_version"],
    )


# ─────────────────────────────────────────────
# Machine CRUD
# ─────────────────────────────────────────────

async def machine_get_or_create(
    db: aiosqlite.Connection, machine_id: str, metadata: Any, daemon_state: Any, namespace: str,
) -> Machine:
    """Find or create a machine by id.

    The namespace is part of a machine's identity once created: asking for an existing
    id under another namespace raises NamespaceConflictError instead of adopting it.
    """
    now = _now()
    async with write_lock(db):
        existing = await machine_get(db, machine_id)
        if existing is not None:
            if existing.namespace != namespace:
                raise NamespaceConflictError("Machine", machine_id, namespace)
            return existing
        try:
            await db.execute(
                "INSERT INTO machines (id, namespace, created_at, updated_at, metadata, metadata_version, "
                "daemon_state, daemon_state_version, active, active_at, seq) "
                "VALUES (?, ?, ?, ?, ?, 1, ?, 1, 0, NULL, 0)",
                (machine_id, namespace, now, now, _dumps(metadata), _dumps(daemon_state)),
            )
            await db.commit()
        except sqlite3.IntegrityError:
            await db.rollback()
            existing = await machine_get(db, machine_id)
            if existing is None:
                raise
            if existing.namespace != namespace:
                raise NamespaceConflictError("Machine", machine_id, namespace)
            return existing

    logger.info(f"Machine created: {machine_id} namespace={namespace!r}")
    machine = await machine_get(db, machine_id)
    if machine is None:
        raise RuntimeError(f"Failed to read back machine {machine_id}")
    return machine


async def machine_get(db: aiosqlite.Connection, machine_id: str) -> Optional[Machine]:
    async with db.execute("SELECT * FROM machines WHERE id = ?", (machine_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_machine(row) if row else None


async def machine_get_by_namespace(db: aiosqlite.Connection, machine_id: str, namespace: str) -> Optional[Machine]:
    async with db.execute(
        "SELECT * FROM machines WHERE id = ? AND namespace = ?", (machine_id, namespace)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_machine(row) if row else None


async def machine_list(db: aiosqlite.Connection) -> list[Machine]:
    async with db.execute("SELECT * FROM machines ORDER BY updated_at DESC") as cur:
        rows = await cur.fetchall()
    return [_row_to_machine(r) for r in rows]


async def machine_list_by_namespace(db: aiosqlite.Connection, namespace: str) -> list[Machine]:
    async with db.execute(
        "SELECT * FROM machines WHERE namespace = ? ORDER BY updated_at DESC", (namespace,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_machine(r) for r in rows]


async def machine_update_metadata(
    db: aiosqlite.Connection, machine_id: str, metadata: Any, expected_version: int, namespace: str,
) -> VersionedUpdateResult:
    return await _versioned_update(
        db, "machines", "metadata", "metadata_version", machine_id, metadata, expected_version, namespace,
    )


async def machine_update_daemon_state(
    db: aiosqlite.Connection, machine_id: str, daemon_state: Any, expected_version: int, namespace: str,
) -> VersionedUpdateResult:
    return await _versioned_update(
        db, "machines", "daemon_state", "daemon_state_version", machine_id, daemon_state, expected_version, namespace,
    )


async def machine_set_active(
    db: aiosqlite.Connection, machine_id: str, namespace: str, active: bool,
) -> Optional[Machine]:
    now = _now()
    async with write_lock(db):
        async with db.execute(
            "UPDATE machines SET active = ?, active_at = CASE WHEN ? THEN ? ELSE active_at END, updated_at = ? "
            "WHERE id = ? AND namespace = ?",
            (1 if active else 0, 1 if active else 0, now, now, machine_id, namespace),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    if updated == 0:
        return None
    return await machine_get(db, machine_id)


def _row_to_machine(row: aiosqlite.Row) -> Machine:
    return Machine(
        id=row["id"],
        namespace=row["namespace"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        active=bool(row["active"]),
        active_at=_parse_dt(row["active_at"]),
        metadata=_loads(row["metadata"]),
        metadata_version=row["metadata_version"],
        daemon_state=_loads(row["daemon_state"]),
        daemon_state_version=row["daemon_state_version"],
    )


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def msg_add_or_get(
    db: aiosqlite.Connection,
    session_id: str,
    content: Any,
    local_id: Optional[str] = None,
) -> tuple[Message, bool]:
    """Insert a message at the session's next seq, or return the one already stored for `local_id`.

    Returns (message, created). A replay does not consume a seq. The seq is computed
    inside the INSERT itself, under the write lock, so no other writer can claim it.
    """
    mid = str(uuid.uuid4())
    now = _now()
    async with write_lock(db):
        if local_id:
            existing = await msg_get_by_local_id(db, session_id, local_id)
            if existing is not None:
                return existing, False

        try:
            async with db.execute(
                "INSERT INTO messages (id, session_id, content, created_at, seq, local_id) "
                "SELECT ?, ?, ?, ?, COALESCE(MAX(seq), 0) + 1, ? FROM messages WHERE session_id = ? "
                "ON CONFLICT(session_id, local_id) WHERE local_id IS NOT NULL DO NOTHING "
                "RETURNING seq",
                (mid, session_id, json.dumps(content), now, local_id, session_id),
            ) as cur:
                row = await cur.fetchone()
            if row is not None:
                await db.execute(
                    "UPDATE sessions SET seq = seq + 1, updated_at = ? WHERE id = ?", (now, session_id)
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if row is None:
            # Stored by another process between the lookup and the insert.
            existing = await msg_get_by_local_id(db, session_id, local_id)
            if existing is None:
                raise RuntimeError(f"Message {local_id!r} conflicted but could not be read back")
            return existing, False

    seq = row["seq"]
    logger.debug(f"Message added: seq={seq} session={session_id}")
    message = Message(
        id=mid, session_id=session_id, seq=seq, content=content,
        created_at=_parse_dt(now), local_id=local_id,
    )
    return message, True


async def msg_add(
    db: aiosqlite.Connection,
    session_id: str,
    content: Any,
    local_id: Optional[str] = None,
) -> Message:
    """Idempotent per (session_id, local_id): a replay returns the stored message."""
    message, _ = await msg_add_or_get(db, session_id, content, local_id)
    return message


async def msg_get_by_local_id(db: aiosqlite.Connection, session_id: str, local_id: str) -> Optional[Message]:
    async with db.execute(
        "SELECT * FROM messages WHERE session_id = ? AND local_id = ? LIMIT 1", (session_id, local_id)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_message(row) if row else None


async def msg_list(
    db: aiosqlite.Connection,
    session_id: str,
    limit: int = MAX_PAGE_SIZE,
    before_seq: Optional[int] = None,
) -> list[Message]:
    """Return the newest page of messages (optionally before `before_seq`) in ascending seq order."""
    safe_limit = _clamp_limit(limit)
    if before_seq is not None:
        query = "SELECT * FROM messages WHERE session_id = ? AND seq < ? ORDER BY seq DESC LIMIT ?"
        params = (session_id, before_seq, safe_limit)
    else:
        query = "SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?"
        params = (session_id, safe_limit)
    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in reversed(rows)]


async def msg_list_after(
    db: aiosqlite.Connection,
    session_id: str,
    after_seq: int = 0,
    limit: int = MAX_PAGE_SIZE,
) -> list[Message]:
    """Return messages with seq strictly greater than `after_seq`, ascending."""
    async with db.execute(
        "SELECT * FROM messages WHERE session_id = ? AND seq > ? ORDER BY seq ASC LIMIT ?",
        (session_id, after_seq or 0, _clamp_limit(limit)),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


async def msg_max_seq(db: aiosqlite.Connection, session_id: str) -> int:
    """Return the highest seq number in the session, or 0 if no messages exist yet."""
    async with db.execute(
        "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?", (session_id,)
    ) as cur:
        row = await cur.fetchone()
    return row["max_seq"]


async def msg_merge_sessions(db: aiosqlite.Connection, from_session_id: str, to_session_id: str) -> MergeResult:
    """Move every message of `from_session_id` to the end of `to_session_id`.

    Moved messages are renumbered to follow the target's current max seq. A moved
    message whose local_id already exists in the target loses its local_id.
    Runs in one transaction: any failure rolls the whole merge back.
    """
    if from_session_id == to_session_id:
        return MergeResult(moved=0, from_max_seq=0, to_max_seq=0)

    async with write_lock(db):
        try:
            await db.execute("BEGIN IMMEDIATE")
            from_max = await msg_max_seq(db, from_session_id)
            to_max = await msg_max_seq(db, to_session_id)
            await db.execute(
                "UPDATE messages SET local_id = NULL "
                "WHERE session_id = ? AND local_id IN ("
                "  SELECT local_id FROM messages WHERE session_id = ? AND local_id IS NOT NULL"
                ")",
                (from_session_id, to_session_id),
            )
            # Move and renumber in one statement: each row lands on a seq above the
            # target's max, so UNIQUE(session_id, seq) holds row by row.
            async with db.execute(
                "UPDATE messages SET session_id = ?, seq = seq + ? WHERE session_id = ?",
                (to_session_id, to_max, from_session_id),
            ) as cur:
                moved = cur.rowcount
            await db.execute(
                "UPDATE sessions SET seq = seq + 1, updated_at = ? WHERE id = ?", (_now(), to_session_id)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            logger.error(f"Merge {from_session_id} -> {to_session_id} rolled back")
            raise

    logger.info(f"Merged {moved} messages from {from_session_id} into {to_session_id} after seq {to_max}")
    return MergeResult(moved=moved, from_max_seq=from_max, to_max_seq=to_max)


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        seq=row["seq"],
        content=_loads(row["content"]),
        created_at=_parse_dt(row["created_at"]),
        local_id=row["local_id"],
    )


# ─────────────────────────────────────────────
# Users
# ─────────────────────────────────────────────

async def user_add(db: aiosqlite.Connection, platform: str, platform_user_id: str, namespace: str) -> User:
    async with write_lock(db):
        await db.execute(
            "INSERT OR IGNORE INTO users (platform, platform_user_id, namespace, created_at) VALUES (?, ?, ?, ?)",
            (platform, platform_user_id, namespace, _now()),
        )
        await db.commit()
    user = await user_get(db, platform, platform_user_id)
    if user is None:
        raise RuntimeError(f"Failed to read back user {platform}:{platform_user_id}")
    return user


async def user_get(db: aiosqlite.Connection, platform: str, platform_user_id: str) -> Optional[User]:
    async with db.execute(
        "SELECT * FROM users WHERE platform = ? AND platform_user_id = ? LIMIT 1",
        (platform, platform_user_id),
    ) as cur:
        row = await cur.fetchone()
    return _row_to_user(row) if row else None


async def user_list_by_platform(db: aiosqlite.Connection, platform: str) -> list[User]:
    async with db.execute("SELECT * FROM users WHERE platform = ? ORDER BY id", (platform,)) as cur:
        rows = await cur.fetchall()
    return [_row_to_user(r) for r in rows]


async def user_list_by_platform_and_namespace(
    db: aiosqlite.Connection, platform: str, namespace: str,
) -> list[User]:
    async with db.execute(
        "SELECT * FROM users WHERE platform = ? AND namespace = ? ORDER BY id", (platform, namespace)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_user(r) for r in rows]


async def user_remove(db: aiosqlite.Connection, platform: str, platform_user_id: str) -> bool:
    async with write_lock(db):
        async with db.execute(
            "DELETE FROM users WHERE platform = ? AND platform_user_id = ?", (platform, platform_user_id)
        ) as cur:
            deleted = cur.rowcount
        await db.commit()
    return deleted > 0


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        platform=row["platform"],
        platform_user_id=row["platform_user_id"],
        namespace=row["namespace"],
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Push subscriptions
# ─────────────────────────────────────────────

async def push_add(
    db: aiosqlite.Connection, namespace: str, endpoint: str, p256dh: str, auth: str,
) -> None:
    """Store a subscription; re-subscribing the same endpoint refreshes its keys."""
    async with write_lock(db):
        await db.execute(
            "INSERT INTO push_subscriptions (namespace, endpoint, p256dh, auth, created_at) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(namespace, endpoint) DO UPDATE SET p256dh = excluded.p256dh, auth = excluded.auth",
            (namespace, endpoint, p256dh, auth, _now()),
        )
        await db.commit()


async def push_remove(db: aiosqlite.Connection, namespace: str, endpoint: str) -> bool:
    async with write_lock(db):
        async with db.execute(
            "DELETE FROM push_subscriptions WHERE namespace = ? AND endpoint = ?", (namespace, endpoint)
        ) as cur:
            deleted = cur.rowcount
        await db.commit()
    return deleted > 0


async def push_list_by_namespace(db: aiosqlite.Connection, namespace: str) -> list[PushSubscription]:
    async with db.execute(
        "SELECT * FROM push_subscriptions WHERE namespace = ? ORDER BY id", (namespace,)
    ) as cur:
        rows = await cur.fetchall()
    return [PushSubscription(
        id=row["id"],
        namespace=row["namespace"],
        endpoint=row["endpoint"],
        p256dh=row["p256dh"],
        auth=row["auth"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]
