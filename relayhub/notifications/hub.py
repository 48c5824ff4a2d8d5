"""
Notification hub: turns sync events into permission-request and ready notifications.

Per session the hub remembers the pending request ids it has already seen, at most one
debounce timer, and the time of the last ready notification. That state is owned by the
hub instance and only mutated from the synchronous event handler and timer callbacks, so
each update completes before any channel delivery is awaited.

Channel deliveries are independent tasks: one channel failing or hanging never blocks
another channel, another session, or the sync engine.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from relayhub.db.models import (
    Session, SyncEvent, SESSION_ADDED, SESSION_UPDATED, SESSION_REMOVED, MESSAGE_RECEIVED,
)
from relayhub.notifications.channel import NotificationChannel
from relayhub.notifications.event_parsing import extract_message_event_type

logger = logging.getLogger(__name__)

DEFAULT_PERMISSION_DEBOUNCE_MS = 500
DEFAULT_READY_COOLDOWN_MS = 5000


@dataclass
class _SessionNotificationState:
    request_ids: set[str] = field(default_factory=set)
    debounce: Optional[asyncio.TimerHandle] = None
    last_ready_at: Optional[float] = None


class NotificationHub:
    def __init__(
        self,
        sync_engine,
        channels: Iterable[NotificationChannel],
        permission_debounce_ms: int = DEFAULT_PERMISSION_DEBOUNCE_MS,
        ready_cooldown_ms: int = DEFAULT_READY_COOLDOWN_MS,
    ) -> None:
        self._engine = sync_engine
        self._channels = list(channels)
        self._permission_debounce = permission_debounce_ms / 1000
        self._ready_cooldown = ready_cooldown_ms / 1000
        self._states: dict[str, _SessionNotificationState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = sync_engine.subscribe(self._handle_sync_event)

    def stop(self) -> None:
        """Unsubscribe, cancel every pending debounce timer and forget all per-session state."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        for state in self._states.values():
            if state.debounce is not None:
                state.debounce.cancel()
        self._states.clear()
        logger.info("Notification hub stopped")

    # ─────────────────────────────────────────
    # Event handling
    # ─────────────────────────────────────────

    def _handle_sync_event(self, event: SyncEvent) -> None:
        if not event.session_id:
            return

        if event.type in (SESSION_ADDED, SESSION_UPDATED):
            session = self._get_notifiable_session(event.session_id)
            if session is None:
                self._clear_session_state(event.session_id)
                return
            self._check_for_permission_notification(session)
            return

        if event.type == SESSION_REMOVED:
            self._clear_session_state(event.session_id)
            return

        if event.type == MESSAGE_RECEIVED:
            if extract_message_event_type(event) == "ready":
                self._send_ready_notification(event.session_id)

    def _get_notifiable_session(self, session_id: str) -> Optional[Session]:
        session = self._engine.get_session(session_id)
        if session is None or not session.active:
            return None
        return session

    def _clear_session_state(self, session_id: str) -> None:
        state = self._states.pop(session_id, None)
        if state is not None and state.debounce is not None:
            state.debounce.cancel()

    def _state_for(self, session_id: str) -> _SessionNotificationState:
        state = self._states.get(session_id)
        if state is None:
            state = self._states[session_id] = _SessionNotificationState()
        return state

    # ─────────────────────────────────────────
    # Permission requests (debounced)
    # ─────────────────────────────────────────

    def _check_for_permission_notification(self, session: Session) -> None:
        agent_state = session.agent_state if isinstance(session.agent_state, dict) else {}
        requests = agent_state.get("requests")
        if not isinstance(requests, dict):
            # No request map at all: keep what we knew.
            return

        current_ids = set(requests.keys())
        state = self._state_for(session.id)
        has_new_requests = not current_ids.issubset(state.request_ids)
        state.request_ids = current_ids

        if not has_new_requests:
            return

        if state.debounce is not None:
            state.debounce.cancel()
        loop = asyncio.get_running_loop()
        state.debounce = loop.call_later(self._permission_debounce, self._fire_permission_notification, session.id)
        logger.debug(f"Permission notification scheduled for session {session.id}")

    def _fire_permission_notification(self, session_id: str) -> None:
        state = self._states.get(session_id)
        if state is not None:
            state.debounce = None

        # Re-read: the session may have changed or gone inactive during the window.
        session = self._get_notifiable_session(session_id)
        if session is None:
            return
        self._dispatch("send_permission_request", session)

    # ─────────────────────────────────────────
    # Ready (cooldown)
    # ─────────────────────────────────────────

    def _send_ready_notification(self, session_id: str) -> None:
        session = self._get_notifiable_session(session_id)
        if session is None:
            return

        now = asyncio.get_running_loop().time()
        state = self._state_for(session_id)
        if state.last_ready_at is not None and now - state.last_ready_at < self._ready_cooldown:
            logger.debug(f"Ready notification for session {session_id} suppressed by cooldown")
            return
        state.last_ready_at = now
        self._dispatch("send_ready", session)

    # ─────────────────────────────────────────
    # Delivery
    # ─────────────────────────────────────────

    def _dispatch(self, method: str, session: Session) -> None:
        for channel in self._channels:
            task = asyncio.create_task(self._deliver(channel, method, session))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, channel: NotificationChannel, method: str, session: Session) -> None:
        try:
            await getattr(channel, method)(session)
        except Exception:
            logger.exception(
                f"[NotificationHub] {type(channel).__name__}.{method} failed for session {session.id}"
            )
