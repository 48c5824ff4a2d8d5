"""
Notification channel that fans hub notifications out as push messages.
"""
from urllib.parse import urlsplit, urlunsplit

from relayhub.db.models import PushPayload, Session
from relayhub.notifications.channel import get_agent_name, get_first_pending_request, get_session_name


class PushNotificationChannel:
    def __init__(self, push_service, app_url: str) -> None:
        self._push = push_service
        self._app_url = app_url

    async def send_permission_request(self, session: Session) -> None:
        if not session.active:
            return

        name = get_session_name(session)
        request = get_first_pending_request(session)
        tool = request.get("tool") if request else None
        tool_suffix = f" ({tool})" if tool else ""

        payload = PushPayload(
            title="Permission Request",
            body=f"{name}{tool_suffix}",
            tag=f"permission-{session.id}",
            data={
                "type": "permission-request",
                "sessionId": session.id,
                "url": self.build_session_url(session.id),
            },
        )
        await self._push.send_to_namespace(session.namespace, payload)

    async def send_ready(self, session: Session) -> None:
        if not session.active:
            return

        payload = PushPayload(
            title="Ready for input",
            body=f"{get_agent_name(session)} is waiting in {get_session_name(session)}",
            tag=f"ready-{session.id}",
            data={
                "type": "ready",
                "sessionId": session.id,
                "url": self.build_session_url(session.id),
            },
        )
        await self._push.send_to_namespace(session.namespace, payload)

    def build_session_url(self, session_id: str) -> str:
        """Join /sessions/<id> onto the public URL, keeping any base path and dropping query/fragment."""
        parts = urlsplit(self._app_url)
        if not parts.scheme or not parts.netloc:
            return f"{self._app_url.rstrip('/')}/sessions/{session_id}"
        base_path = parts.path.rstrip("/")
        return urlunsplit((parts.scheme, parts.netloc, f"{base_path}/sessions/{session_id}", "", ""))
