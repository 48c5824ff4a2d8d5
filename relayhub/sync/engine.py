"""
Sync engine: the single mutation point for session and machine state.

Every accepted mutation is persisted through the store first, then folded into the
in-memory view and published as a SyncEvent. Listeners are called synchronously, in
subscription order, on the same delivery as the mutation.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import aiosqlite

from relayhub.db import crud
from relayhub.db.models import (
    Session, Machine, Message, MergeResult, SessionAccess, SyncEvent, VersionedUpdateResult,
    SESSION_ADDED, SESSION_UPDATED, SESSION_REMOVED, MESSAGE_RECEIVED, MACHINE_UPDATED,
)

logger = logging.getLogger(__name__)

SyncEventListener = Callable[[SyncEvent], None]


class SessionAccessError(Exception):
    """Raised by mutations on a session the caller cannot reach. reason mirrors SessionAccess.reason."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id}: {reason}")


class SyncEngine:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._sessions: dict[str, Session] = {}
        self._machines: dict[str, Machine] = {}
        self._listeners: list[SyncEventListener] = []

    async def start(self) -> None:
        """Load the persisted sessions and machines into memory."""
        for session in await crud.session_list(self._db):
            self._sessions[session.id] = session
        for machine in await crud.machine_list(self._db):
            self._machines[machine.id] = machine
        logger.info(f"Sync engine loaded {len(self._sessions)} sessions, {len(self._machines)} machines")

    # ─────────────────────────────────────────
    # Event stream
    # ─────────────────────────────────────────

    def subscribe(self, listener: SyncEventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Sync listener failed on {event.type} for session {event.session_id}")

    # ─────────────────────────────────────────
    # Read accessors
    # ─────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_sessions_by_namespace(self, namespace: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.namespace == namespace]

    def get_machine(self, machine_id: str) -> Optional[Machine]:
        return self._machines.get(machine_id)

    def get_machines_by_namespace(self, namespace: str) -> list[Machine]:
        return [m for m in self._machines.values() if m.namespace == namespace]

    def resolve_session_access(self, session_id: str, namespace: Optional[str]) -> SessionAccess:
        if not namespace:
            return SessionAccess(ok=False, session_id=session_id, reason="namespace-missing")
        session = self._sessions.get(session_id)
        if session is None:
            return SessionAccess(ok=False, session_id=session_id, reason="not-found")
        if session.namespace != namespace:
            return SessionAccess(ok=False, session_id=session_id, reason="access-denied")
        return SessionAccess(ok=True, session_id=session_id, session=session)

    def _require_session(self, session_id: str, namespace: Optional[str]) -> Session:
        access = self.resolve_session_access(session_id, namespace)
        if not access.ok:
            raise SessionAccessError(session_id, access.reason)
        return access.session

    # ─────────────────────────────────────────
    # In-memory view maintenance
    # ─────────────────────────────────────────

    def _cache_session(self, fresh: Session) -> Session:
        cached = self._sessions.get(fresh.id)
        if cached is not None:
            if fresh.seq < cached.seq:
                # A read that completed after a newer write already landed; keep the newer view.
                return cached
            fresh.thinking = cached.thinking
            fresh.thinking_at = cached.thinking_at
        self._sessions[fresh.id] = fresh
        return fresh

    def _cache_machine(self, fresh: Machine) -> Machine:
        cached = self._machines.get(fresh.id)
        if cached is not None and fresh.seq < cached.seq:
            return cached
        self._machines[fresh.id] = fresh
        return fresh

    async def _refresh_session(self, session_id: str) -> Optional[Session]:
        fresh = await crud.session_get(self._db, session_id)
        if fresh is None:
            self._sessions.pop(session_id, None)
            return None
        return self._cache_session(fresh)

    async def _refresh_machine(self, machine_id: str) -> Optional[Machine]:
        fresh = await crud.machine_get(self._db, machine_id)
        if fresh is None:
            self._machines.pop(machine_id, None)
            return None
        return self._cache_machine(fresh)

    # ─────────────────────────────────────────
    # Session mutations
    # ─────────────────────────────────────────

    async def get_or_create_session(
        self,
        tag: Optional[str],
        metadata: Any,
        agent_state: Any,
        namespace: str,
        machine_id: Optional[str] = None,
    ) -> Session:
        session = await crud.session_get_or_create(self._db, tag, metadata, agent_state, namespace, machine_id)
        is_new = session.id not in self._sessions
        session = self._cache_session(session)
        if is_new:
            self._emit(SyncEvent(type=SESSION_ADDED, session_id=session.id, namespace=session.namespace))
        return session

    async def update_session_metadata(
        self, session_id: str, metadata: Any, expected_version: int, namespace: str,
    ) -> VersionedUpdateResult:
        result = await crud.session_update_metadata(self._db, session_id, metadata, expected_version, namespace)
        if result.ok:
            await self._session_changed(session_id)
        return result

    async def update_session_agent_state(
        self, session_id: str, agent_state: Any, expected_version: int, namespace: str,
    ) -> VersionedUpdateResult:
        result = await crud.session_update_agent_state(
            self._db, session_id, agent_state, expected_version, namespace,
        )
        if result.ok:
            await self._session_changed(session_id)
        return result

    async def _session_changed(self, session_id: str) -> None:
        session = await self._refresh_session(session_id)
        if session is not None:
            self._emit(SyncEvent(type=SESSION_UPDATED, session_id=session.id, namespace=session.namespace))

    async def session_alive(self, session_id: str, namespace: str, thinking: bool = False) -> Session:
        """Record a keep-alive from the owning agent process."""
        session = self._require_session(session_id, namespace)
        now = datetime.now(timezone.utc)
        changed = session.thinking != thinking

        if not session.active:
            refreshed = await crud.session_set_active(self._db, session_id, namespace, True)
            if refreshed is None:
                self._sessions.pop(session_id, None)
                raise SessionAccessError(session_id, "not-found")
            session = self._cache_session(refreshed)
            changed = True
        else:
            session.active_at = now

        if session.thinking != thinking:
            session.thinking = thinking
            session.thinking_at = now

        if changed:
            self._emit(SyncEvent(type=SESSION_UPDATED, session_id=session_id, namespace=session.namespace))
        return session

    async def session_end(self, session_id: str, namespace: str) -> Session:
        """Release the session: the agent process exited."""
        self._require_session(session_id, namespace)
        refreshed = await crud.session_set_active(self._db, session_id, namespace, False)
        if refreshed is None:
            self._sessions.pop(session_id, None)
            raise SessionAccessError(session_id, "not-found")
        session = self._cache_session(refreshed)
        session.thinking = False
        session.thinking_at = datetime.now(timezone.utc)
        self._emit(SyncEvent(type=SESSION_UPDATED, session_id=session_id, namespace=session.namespace))
        return session

    async def add_message(
        self, session_id: str, content: Any, namespace: str, local_id: Optional[str] = None,
    ) -> Message:
        """Append a message. A replayed local_id returns the original without a new event."""
        self._require_session(session_id, namespace)
        message, created = await crud.msg_add_or_get(self._db, session_id, content, local_id)
        if not created:
            return message

        await self._refresh_session(session_id)
        self._emit(SyncEvent(
            type=MESSAGE_RECEIVED, session_id=session_id, namespace=namespace, message=message,
        ))
        return message

    async def get_messages(
        self, session_id: str, limit: int = crud.MAX_PAGE_SIZE, before_seq: Optional[int] = None,
    ) -> list[Message]:
        return await crud.msg_list(self._db, session_id, limit=limit, before_seq=before_seq)

    async def get_messages_after(
        self, session_id: str, after_seq: int, limit: int = crud.MAX_PAGE_SIZE,
    ) -> list[Message]:
        return await crud.msg_list_after(self._db, session_id, after_seq=after_seq, limit=limit)

    async def merge_sessions(self, from_session_id: str, to_session_id: str, namespace: str) -> MergeResult:
        """Fold one session's history into another and drop the emptied source session."""
        self._require_session(from_session_id, namespace)
        self._require_session(to_session_id, namespace)

        result = await crud.msg_merge_sessions(self._db, from_session_id, to_session_id)
        if from_session_id != to_session_id:
            await crud.session_delete(self._db, from_session_id, namespace)
            self._sessions.pop(from_session_id, None)
            self._emit(SyncEvent(type=SESSION_REMOVED, session_id=from_session_id, namespace=namespace))
            await self._session_changed(to_session_id)
        return result

    async def delete_session(self, session_id: str, namespace: str) -> bool:
        self._require_session(session_id, namespace)
        deleted = await crud.session_delete(self._db, session_id, namespace)
        self._sessions.pop(session_id, None)
        if deleted:
            self._emit(SyncEvent(type=SESSION_REMOVED, session_id=session_id, namespace=namespace))
        return deleted

    # ─────────────────────────────────────────
    # Machine mutations
    # ─────────────────────────────────────────

    async def get_or_create_machine(
        self, machine_id: str, metadata: Any, daemon_state: Any, namespace: str,
    ) -> Machine:
        machine = await crud.machine_get_or_create(self._db, machine_id, metadata, daemon_state, namespace)
        is_new = machine.id not in self._machines
        machine = self._cache_machine(machine)
        if is_new:
            self._emit(SyncEvent(type=MACHINE_UPDATED, machine_id=machine.id, namespace=machine.namespace))
        return machine

    async def update_machine_metadata(
        self, machine_id: str, metadata: Any, expected_version: int, namespace: str,
    ) -> VersionedUpdateResult:
        result = await crud.machine_update_metadata(self._db, machine_id, metadata, expected_version, namespace)
        if result.ok:
            await self._machine_changed(machine_id)
        return result

    async def update_machine_daemon_state(
        self, machine_id: str, daemon_state: Any, expected_version: int, namespace: str,
    ) -> VersionedUpdateResult:
        result = await crud.machine_update_daemon_state(
            self._db, machine_id, daemon_state, expected_version, namespace,
        )
        if result.ok:
            await self._machine_changed(machine_id)
        return result

    async def machine_alive(self, machine_id: str, namespace: str) -> Optional[Machine]:
        machine = self._machines.get(machine_id)
        if machine is None or machine.namespace != namespace:
            return None
        if machine.active:
            machine.active_at = datetime.now(timezone.utc)
            return machine
        refreshed = await crud.machine_set_active(self._db, machine_id, namespace, True)
        if refreshed is None:
            return None
        machine = self._cache_machine(refreshed)
        self._emit(SyncEvent(type=MACHINE_UPDATED, machine_id=machine_id, namespace=namespace))
        return machine

    async def machine_end(self, machine_id: str, namespace: str) -> Optional[Machine]:
        refreshed = await crud.machine_set_active(self._db, machine_id, namespace, False)
        if refreshed is None:
            return None
        machine = self._cache_machine(refreshed)
        self._emit(SyncEvent(type=MACHINE_UPDATED, machine_id=machine_id, namespace=namespace))
        return machine

    async def _machine_changed(self, machine_id: str) -> None:
        machine = await self._refresh_machine(machine_id)
        if machine is not None:
            self._emit(SyncEvent(type=MACHINE_UPDATED, machine_id=machine.id, namespace=machine.namespace))
