"""
HTTP surface tests. The app runs its real lifespan against an in-memory database
(RELAYHUB_DB is pinned by conftest.py), one fresh database per test.
"""
import pytest
from fastapi.testclient import TestClient

from relayhub.main import app

NS = {"X-Relay-Namespace": "alpha"}
OTHER_NS = {"X-Relay-Namespace": "beta"}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _create_session(client, tag="tag-1", headers=NS, **extra):
    resp = client.post("/cli/sessions", json={"tag": tag, **extra}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["session"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_settings_exposes_effective_config(client):
    data = client.get("/api/settings").json()
    assert "PERMISSION_DEBOUNCE_MS" in data
    assert "PUBLIC_URL" in data


def test_missing_namespace_is_unauthorized(client):
    assert client.get("/api/sessions").status_code == 401
    assert client.post("/cli/sessions", json={"tag": "x"}).status_code == 401


def test_session_access_statuses(client):
    s = _create_session(client, metadata={"name": "demo"})

    assert client.get(f"/api/sessions/{s['id']}", headers=NS).json()["session"]["metadata"] == {"name": "demo"}
    assert client.get(f"/api/sessions/{s['id']}").status_code == 401
    denied = client.get(f"/api/sessions/{s['id']}", headers=OTHER_NS)
    assert denied.status_code == 403
    assert denied.json()["error"] == "access-denied"
    assert client.get("/api/sessions/unknown", headers=NS).status_code == 404


def test_session_listing_is_namespaced(client):
    a = _create_session(client, tag="a")
    _create_session(client, tag="b", headers=OTHER_NS)
    ids = [s["id"] for s in client.get("/api/sessions", headers=NS).json()]
    assert ids == [a["id"]]


def test_messages_are_idempotent_and_paged(client):
    s = _create_session(client)
    url = f"/cli/sessions/{s['id']}/messages"

    first = client.post(url, json={"content": {"role": "user", "content": "hi"}, "local_id": "L1"}, headers=NS)
    replay = client.post(url, json={"content": {"role": "user", "content": "hi"}, "local_id": "L1"}, headers=NS)
    assert first.status_code == 201
    assert replay.json()["message"]["id"] == first.json()["message"]["id"]

    for i in range(3):
        client.post(url, json={"content": {"n": i}}, headers=NS)

    page = client.get(f"/api/sessions/{s['id']}/messages", params={"limit": 2}, headers=NS).json()["messages"]
    assert [m["seq"] for m in page] == [3, 4]

    after = client.get(
        f"/api/sessions/{s['id']}/messages/after", params={"after_seq": 2}, headers=NS,
    ).json()["messages"]
    assert [m["seq"] for m in after] == [3, 4]

    assert client.post(url, json={"content": {"n": 9}}, headers=OTHER_NS).status_code == 403


def test_versioned_update_conflict(client):
    s = _create_session(client, metadata={"name": "v1"})
    url = f"/cli/sessions/{s['id']}/metadata"

    ok = client.post(url, json={"value": {"name": "v2"}, "expected_version": 1}, headers=NS)
    assert ok.status_code == 200
    assert ok.json()["version"] == 2

    stale = client.post(url, json={"value": {"name": "v3"}, "expected_version": 1}, headers=NS)
    assert stale.status_code == 409
    assert stale.json() == {"result": "version-mismatch", "version": 2, "value": {"name": "v2"}}

    missing = client.post(url, json={"value": {}, "expected_version": 1}, headers=OTHER_NS)
    assert missing.status_code == 404


def test_alive_end_and_delete(client):
    s = _create_session(client)
    alive = client.post(f"/cli/sessions/{s['id']}/alive", json={"thinking": True}, headers=NS).json()["session"]
    assert alive["active"] is True
    assert alive["thinking"] is True

    ended = client.post(f"/cli/sessions/{s['id']}/end", headers=NS).json()["session"]
    assert ended["active"] is False

    assert client.delete(f"/api/sessions/{s['id']}", headers=OTHER_NS).status_code == 403
    assert client.delete(f"/api/sessions/{s['id']}", headers=NS).json() == {"ok": True}
    assert client.get(f"/api/sessions/{s['id']}", headers=NS).status_code == 404


def test_merge_over_http(client):
    src = _create_session(client, tag="src")
    dst = _create_session(client, tag="dst")
    client.post(f"/cli/sessions/{dst['id']}/messages", json={"content": {"n": "dst"}}, headers=NS)
    client.post(f"/cli/sessions/{src['id']}/messages", json={"content": {"n": "src"}}, headers=NS)

    resp = client.post(f"/cli/sessions/{src['id']}/merge", json={"target_session_id": dst["id"]}, headers=NS)
    assert resp.json() == {"moved": 1, "from_max_seq": 1, "to_max_seq": 1}

    msgs = client.get(f"/api/sessions/{dst['id']}/messages", headers=NS).json()["messages"]
    assert [m["content"]["n"] for m in msgs] == ["dst", "src"]
    assert client.get(f"/api/sessions/{src['id']}", headers=NS).status_code == 404


def test_machine_namespace_conflict_and_access(client):
    created = client.post("/cli/machines", json={"id": "m1", "metadata": {"host": "h"}}, headers=NS)
    assert created.status_code == 200

    conflict = client.post("/cli/machines", json={"id": "m1"}, headers=OTHER_NS)
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "namespace-conflict"

    assert client.get("/api/machines/m1", headers=OTHER_NS).status_code == 403
    assert client.get("/api/machines/missing", headers=NS).status_code == 404
    assert [m["id"] for m in client.get("/api/machines", headers=NS).json()] == ["m1"]

    state = client.post("/cli/machines/m1/daemon-state", json={"value": {"status": "up"}, "expected_version": 1},
                        headers=NS)
    assert state.json()["result"] == "success"
    assert client.post("/cli/machines/m1/alive", headers=NS).json()["machine"]["active"] is True
    assert client.post("/cli/machines/m1/end", headers=NS).json()["machine"]["active"] is False


def test_push_subscribe_and_unsubscribe(client):
    body = {"endpoint": "https://push.example/1", "p256dh": "key", "auth": "secret"}
    assert client.post("/api/push/subscribe", json=body, headers=NS).json() == {"ok": True}
    assert client.post("/api/push/unsubscribe", json={"endpoint": body["endpoint"]}, headers=OTHER_NS).json() == \
        {"ok": False}
    assert client.post("/api/push/unsubscribe", json={"endpoint": body["endpoint"]}, headers=NS).json() == \
        {"ok": True}
