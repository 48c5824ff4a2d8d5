"""
Unit tests for message storage: per-session seq assignment, local_id idempotency,
cursor paging and transactional session merges.
"""
import asyncio
import sqlite3

import aiosqlite
import pytest

from relayhub.db import crud
from relayhub.db.database import init_schema


async def _make_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _session(db, tag: str, namespace: str = "ns"):
    return await crud.session_get_or_create(db, tag, {"path": f"/work/{tag}"}, None, namespace)


@pytest.mark.asyncio
async def test_seq_is_gap_free_per_session():
    db = await _make_db()
    try:
        a = await _session(db, "a")
        b = await _session(db, "b")

        seqs_a = [(await crud.msg_add(db, a.id, {"text": f"a{i}"})).seq for i in range(5)]
        seqs_b = [(await crud.msg_add(db, b.id, {"text": f"b{i}"})).seq for i in range(2)]

        assert seqs_a == [1, 2, 3, 4, 5]
        assert seqs_b == [1, 2]
        assert await crud.msg_max_seq(db, a.id) == 5
        assert await crud.msg_max_seq(db, "missing") == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_local_id_replay_returns_existing_message():
    db = await _make_db()
    try:
        s = await _session(db, "idem")
        first = await crud.msg_add(db, s.id, {"text": "hello"}, local_id="L1")
        replay = await crud.msg_add(db, s.id, {"text": "hello again"}, local_id="L1")

        assert replay.id == first.id
        assert replay.seq == first.seq == 1
        assert replay.content == {"text": "hello"}

        nxt = await crud.msg_add(db, s.id, {"text": "next"}, local_id="L2")
        assert nxt.seq == 2
        assert len(await crud.msg_list(db, s.id)) == 2

        # One seq bump per stored message, none for the replay.
        fresh = await crud.session_get(db, s.id)
        assert fresh.seq == s.seq + 2
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_same_local_id_in_different_sessions_is_independent():
    db = await _make_db()
    try:
        a = await _session(db, "a")
        b = await _session(db, "b")
        ma = await crud.msg_add(db, a.id, {"text": "x"}, local_id="shared")
        mb = await crud.msg_add(db, b.id, {"text": "y"}, local_id="shared")
        assert ma.id != mb.id
        assert (await crud.msg_get_by_local_id(db, b.id, "shared")).content == {"text": "y"}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_msg_list_pages_backwards_in_ascending_order():
    db = await _make_db()
    try:
        s = await _session(db, "page")
        for i in range(10):
            await crud.msg_add(db, s.id, {"n": i})

        newest = await crud.msg_list(db, s.id, limit=3)
        assert [m.seq for m in newest] == [8, 9, 10]

        older = await crud.msg_list(db, s.id, limit=3, before_seq=newest[0].seq)
        assert [m.seq for m in older] == [5, 6, 7]

        head = await crud.msg_list(db, s.id, limit=3, before_seq=2)
        assert [m.seq for m in head] == [1]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_msg_list_after_returns_tail():
    db = await _make_db()
    try:
        s = await _session(db, "after")
        for i in range(6):
            await crud.msg_add(db, s.id, {"n": i})

        assert [m.seq for m in await crud.msg_list_after(db, s.id, after_seq=4)] == [5, 6]
        assert [m.seq for m in await crud.msg_list_after(db, s.id, after_seq=0, limit=2)] == [1, 2]
        assert await crud.msg_list_after(db, s.id, after_seq=6) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_page_limit_is_clamped():
    db = await _make_db()
    try:
        s = await _session(db, "clamp")
        for i in range(3):
            await crud.msg_add(db, s.id, {"n": i})

        # Limits below 1 read a single message; limits above the cap read everything available.
        assert [m.seq for m in await crud.msg_list(db, s.id, limit=0)] == [3]
        assert len(await crud.msg_list(db, s.id, limit=5000)) == 3
        assert crud._clamp_limit(5000) == crud.MAX_PAGE_SIZE
        assert crud._clamp_limit(-4) == 1
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_merge_appends_after_target_max_seq():
    db = await _make_db()
    try:
        src = await _session(db, "src")
        dst = await _session(db, "dst")
        for i in range(5):
            await crud.msg_add(db, src.id, {"text": f"src-{i}"}, local_id="dup" if i == 2 else f"s{i}")
        for i in range(10):
            await crud.msg_add(db, dst.id, {"text": f"dst-{i}"}, local_id="dup" if i == 0 else f"d{i}")

        result = await crud.msg_merge_sessions(db, src.id, dst.id)
        assert result.moved == 5
        assert result.from_max_seq == 5
        assert result.to_max_seq == 10

        merged = await crud.msg_list(db, dst.id)
        assert [m.seq for m in merged] == list(range(1, 16))
        assert [m.content["text"] for m in merged[10:]] == [f"src-{i}" for i in range(5)]

        # The target keeps its local_id, the moved duplicate loses it.
        assert merged[0].local_id == "dup"
        assert merged[12].local_id is None
        assert merged[13].local_id == "s3"

        assert await crud.msg_list(db, src.id) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_merge_into_empty_target_keeps_seqs():
    db = await _make_db()
    try:
        src = await _session(db, "src")
        dst = await _session(db, "dst")
        for i in range(3):
            await crud.msg_add(db, src.id, {"n": i})

        result = await crud.msg_merge_sessions(db, src.id, dst.id)
        assert result.moved == 3
        assert [m.seq for m in await crud.msg_list(db, dst.id)] == [1, 2, 3]

        # Appending after a merge continues from the merged max.
        assert (await crud.msg_add(db, dst.id, {"n": "next"})).seq == 4
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_merge_into_self_is_noop():
    db = await _make_db()
    try:
        s = await _session(db, "self")
        await crud.msg_add(db, s.id, {"n": 1})
        result = await crud.msg_merge_sessions(db, s.id, s.id)
        assert result.moved == 0
        assert [m.seq for m in await crud.msg_list(db, s.id)] == [1]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_merge_failure_rolls_back_everything():
    db = await _make_db()
    try:
        src = await _session(db, "src")
        dst = await _session(db, "dst")
        for i in range(3):
            await crud.msg_add(db, src.id, {"n": i}, local_id=f"k{i}")
        await crud.msg_add(db, dst.id, {"n": "t"}, local_id="k1")

        await db.execute(
            "CREATE TRIGGER fail_merge BEFORE UPDATE OF session_id ON messages "
            "BEGIN SELECT RAISE(ABORT, 'boom'); END;"
        )
        await db.commit()

        with pytest.raises(sqlite3.DatabaseError):
            await crud.msg_merge_sessions(db, src.id, dst.id)

        remaining = await crud.msg_list(db, src.id)
        assert [m.seq for m in remaining] == [1, 2, 3]
        assert [m.local_id for m in remaining] == ["k0", "k1", "k2"]
        assert [m.seq for m in await crud.msg_list(db, dst.id)] == [1]
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Concurrency on the shared connection
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_inserts_get_distinct_gap_free_seqs():
    db = await _make_db()
    try:
        s = await _session(db, "burst")
        results = await asyncio.gather(*(crud.msg_add(db, s.id, {"n": i}) for i in range(20)))

        assert sorted(m.seq for m in results) == list(range(1, 21))
        assert [m.seq for m in await crud.msg_list(db, s.id)] == list(range(1, 21))
        assert (await crud.session_get(db, s.id)).seq == s.seq + 20
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_concurrent_replays_store_one_row():
    db = await _make_db()
    try:
        s = await _session(db, "replay")
        results = await asyncio.gather(
            *(crud.msg_add_or_get(db, s.id, {"text": "once"}, local_id="L1") for _ in range(5))
        )

        assert [created for _, created in results].count(True) == 1
        assert len({m.id for m, _ in results}) == 1
        stored = await crud.msg_list(db, s.id)
        assert [(m.seq, m.local_id) for m in stored] == [(1, "L1")]
        assert (await crud.session_get(db, s.id)).seq == s.seq + 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_merge_racing_insert_into_target_stays_gap_free():
    # Sweep the point at which the insert interleaves with the merge.
    for delay in range(16):
        db = await _make_db()
        try:
            src = await _session(db, "src")
            dst = await _session(db, "dst")
            for i in range(3):
                await crud.msg_add(db, src.id, {"text": f"src-{i}"})
                await crud.msg_add(db, dst.id, {"text": f"dst-{i}"})

            async def late_insert():
                for _ in range(delay):
                    await asyncio.sleep(0)
                return await crud.msg_add(db, dst.id, {"text": "late"})

            result, late = await asyncio.gather(crud.msg_merge_sessions(db, src.id, dst.id), late_insert())

            seqs = [m.seq for m in await crud.msg_list(db, dst.id)]
            assert seqs == list(range(1, 8)), f"delay={delay}"
            assert result.moved == 3
            assert late.seq in seqs
            assert await crud.msg_list(db, src.id) == []
        finally:
            await db.close()


@pytest.mark.asyncio
async def test_duplicate_seq_is_rejected_by_schema():
    db = await _make_db()
    try:
        s = await _session(db, "dup")
        await crud.msg_add(db, s.id, {"n": 1})
        with pytest.raises(sqlite3.IntegrityError):
            await db.execute(
                "INSERT INTO messages (id, session_id, content, created_at, seq) VALUES (?, ?, ?, ?, ?)",
                ("manual", s.id, "{}", "2024-01-01T00:00:00+00:00", 1),
            )
    finally:
        await db.close()
