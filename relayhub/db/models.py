"""
Data models (dataclasses) for RelayHub.
These are plain Python objects used across the store, sync engine, notification and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


@dataclass
class Session:
    id: str
    namespace: str
    tag: Optional[str]
    machine_id: Optional[str]
    seq: int                      # bumped on every persisted mutation, never decreases
    created_at: datetime
    updated_at: datetime
    active: bool
    active_at: Optional[datetime]
    metadata: Any                 # decoded JSON (path, host, flavor, name, ...)
    metadata_version: int
    agent_state: Any              # decoded JSON: {"requests": {...}, "controlledByUser": bool}
    agent_state_version: int
    thinking: bool = False        # transient, never persisted
    thinking_at: Optional[datetime] = None


@dataclass
class Machine:
    id: str
    namespace: str
    seq: int
    created_at: datetime
    updated_at: datetime
    active: bool
    active_at: Optional[datetime]
    metadata: Any
    metadata_version: int
    daemon_state: Any
    daemon_state_version: int


@dataclass
class Message:
    id: str
    session_id: str
    seq: int                      # per-session, gap-free, strictly increasing
    content: Any                  # decoded JSON envelope
    created_at: datetime
    local_id: Optional[str] = None  # client idempotency key, unique per session


@dataclass
class User:
    id: int
    platform: str
    platform_user_id: str
    namespace: str
    created_at: datetime


@dataclass
class PushSubscription:
    id: int
    namespace: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: datetime


@dataclass
class VersionedUpdateResult:
    """
    Outcome of a compare-and-swap update.

    ok=True carries the new version and stored value.
    ok=False carries reason 'version-mismatch' (with the current version and value,
    so callers can retry without another read) or 'not-found'.
    """
    ok: bool
    version: Optional[int] = None
    value: Any = None
    reason: Optional[str] = None


@dataclass
class MergeResult:
    moved: int
    from_max_seq: int
    to_max_seq: int


# Sync event types
SESSION_ADDED = "session-added"
SESSION_UPDATED = "session-updated"
SESSION_REMOVED = "session-removed"
MESSAGE_RECEIVED = "message-received"
MACHINE_UPDATED = "machine-updated"


@dataclass
class SyncEvent:
    """A change accepted by the sync engine, delivered to every subscriber in order."""
    type: str
    session_id: Optional[str] = None
    namespace: Optional[str] = None
    message: Optional[Message] = None
    machine_id: Optional[str] = None


@dataclass
class SessionAccess:
    """Result of a namespace access check. reason: namespace-missing | access-denied | not-found"""
    ok: bool
    session_id: str
    session: Optional[Session] = None
    reason: Optional[str] = None


@dataclass
class PushPayload:
    title: str
    body: str
    tag: str
    data: dict = field(default_factory=dict)
