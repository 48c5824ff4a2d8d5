"""
Notification channel contract and the session summaries channels render.
"""
import posixpath
from typing import Any, Optional, Protocol

from relayhub.db.models import Session

_AGENT_NAMES = {
    "claude": "Claude",
    "codex": "Codex",
    "gemini": "Gemini",
}


class NotificationChannel(Protocol):
    """
    A sink for hub notifications (push, chat bots, ...).

    Both methods receive a fully hydrated session, must no-op for an inactive one,
    and should log and return normally on expected delivery failures: the hub does
    not retry.
    """

    async def send_permission_request(self, session: Session) -> None: ...

    async def send_ready(self, session: Session) -> None: ...


def _metadata(session: Session) -> dict:
    return session.metadata if isinstance(session.metadata, dict) else {}


def get_session_name(session: Session) -> str:
    meta = _metadata(session)
    name = meta.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()

    summary = meta.get("summary")
    if isinstance(summary, dict):
        text = summary.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()

    path = meta.get("path")
    if isinstance(path, str) and path.strip():
        base = posixpath.basename(path.rstrip("/\\").replace("\\", "/"))
        if base:
            return base

    return session.id[:8]


def get_agent_name(session: Session) -> str:
    flavor = _metadata(session).get("flavor")
    if isinstance(flavor, str):
        return _AGENT_NAMES.get(flavor.lower(), "Agent")
    return "Agent"


def get_first_pending_request(session: Session) -> Optional[dict[str, Any]]:
    """Pick one representative pending permission request, in insertion order."""
    state = session.agent_state if isinstance(session.agent_state, dict) else {}
    requests = state.get("requests")
    if not isinstance(requests, dict) or not requests:
        return None
    first = next(iter(requests.values()))
    return first if isinstance(first, dict) else None
