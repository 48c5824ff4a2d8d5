"""
Conftest for RelayHub unit tests.

Every test builds its own in-memory database, so nothing here starts a server.
RELAYHUB_DB is pinned before any relayhub module is imported because config values
are resolved at import time.
"""
import os

os.environ["RELAYHUB_DB"] = ":memory:"
os.environ.setdefault("RELAYHUB_PUBLIC_URL", "https://hub.example.com")
