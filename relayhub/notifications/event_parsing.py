"""
Detect semantic event envelopes inside message content.

Message content arrives either as a direct envelope ``{"type": "event", "data": {...}}``
or role-wrapped as ``{"role": ..., "content": {"type": "event", "data": {...}}}``.
Anything else, including malformed payloads, yields None.
"""
from typing import Any, Optional

from relayhub.db.models import SyncEvent, MESSAGE_RECEIVED


def _extract_event_envelope(content: Any) -> Optional[dict]:
    if not isinstance(content, dict):
        return None

    if content.get("type") == "event":
        return content

    inner = content.get("content")
    if isinstance(inner, dict) and inner.get("type") == "event":
        return inner

    return None


def extract_message_event_type(event: SyncEvent) -> Optional[str]:
    """Return the envelope's ``data.type`` for a message-received event, else None."""
    if event.type != MESSAGE_RECEIVED or event.message is None:
        return None

    envelope = _extract_event_envelope(event.message.content)
    if envelope is None:
        return None

    data = envelope.get("data")
    if not isinstance(data, dict):
        return None
    event_type = data.get("type")
    return event_type if isinstance(event_type, str) else None
