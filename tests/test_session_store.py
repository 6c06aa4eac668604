import json

import aiosqlite

from services.realtime.session_store import SessionIdentityStore, session_key

DAY = 24 * 60 * 60


class Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def test_session_is_resumed_within_window(kv):
    clock = Clock(1_700_000_000.0)
    store = SessionIdentityStore(kv, clock=clock)

    first = await store.resolve_session("a1", "c1")
    clock.now += 29 * DAY
    second = await store.resolve_session("a1", "c1")

    assert first == second == "1700000000000"


async def test_expired_session_is_replaced_and_persisted(kv):
    clock = Clock(1_700_000_000.0)
    old_timestamp = int((clock.now - 31 * DAY) * 1000)
    await kv.set(session_key("a1", "c1"), json.dumps({"sessionId": "old", "timestamp": old_timestamp}))
    store = SessionIdentityStore(kv, clock=clock)

    session_id = await store.resolve_session("a1", "c1")

    assert session_id != "old"
    stored = json.loads(await kv.get(session_key("a1", "c1")))
    assert stored == {"sessionId": session_id, "timestamp": 1_700_000_000_000}


async def test_sessions_are_scoped_per_agent_and_company(kv):
    clock = Clock(1_700_000_000.0)
    store = SessionIdentityStore(kv, clock=clock)

    first = await store.resolve_session("a1", "c1")
    other = await store.resolve_session("a2", "c1")

    assert first != other
    assert sorted(await kv.keys("agentconnect_session_")) == [
        "agentconnect_session_c1_a1",
        "agentconnect_session_c1_a2",
    ]


async def test_unreadable_record_is_replaced(kv):
    await kv.set(session_key("a1", "c1"), "{broken")
    store = SessionIdentityStore(kv, clock=Clock(5.0))

    assert await store.resolve_session("a1", "c1") == "5000"


async def test_persist_overwrites(kv):
    store = SessionIdentityStore(kv, clock=Clock(10.0))
    await store.persist("a1", "c1", "custom")
    await store.persist("a1", "c1", "custom")

    assert await store.resolve_session("a1", "c1") == "custom"


class BrokenKV:
    async def get(self, key):
        raise aiosqlite.OperationalError("disk I/O error")

    async def set(self, key, value):
        raise aiosqlite.OperationalError("disk I/O error")


async def test_storage_failure_falls_back_to_process_session():
    store = SessionIdentityStore(BrokenKV(), clock=Clock(20.0))

    first = await store.resolve_session("a1", "c1")
    second = await store.resolve_session("a1", "c1")

    assert first == second == "20000"


def test_generated_ids_are_monotonic():
    store = SessionIdentityStore(BrokenKV(), clock=Clock(1.0))
    assert [store.generate_session_id() for _ in range(3)] == ["1000", "1001", "1002"]
