from __future__ import annotations

import pytest

from guidestream.session.phases import SessionPhase
from guidestream.session.state import SessionRecord, SessionStateStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
async def store_and_clock(tmp_path):
    clock = FakeClock()
    store = SessionStateStore(tmp_path / "nested" / "state.db", ttl_seconds=60, clock=clock)
    await store.initialize()
    try:
        yield store, clock
    finally:
        await store.close()


@pytest.mark.anyio
async def test_upsert_and_get_round_trip(store_and_clock) -> None:
    store, _ = store_and_clock
    record = SessionRecord(
        session_id="abc",
        current_phase=SessionPhase.RELEASE,
        sentences_in_phase=4,
        total_sentences=80,
        continuation_token="resp-9",
        phase_budgets={"release": 49},
        session_length_minutes=15,
        mood="stressed",
    )
    await store.upsert(record)

    loaded = await store.get("abc")
    assert loaded == record
    assert loaded.current_phase is SessionPhase.RELEASE


@pytest.mark.anyio
async def test_upsert_overwrites_existing_record(store_and_clock) -> None:
    store, _ = store_and_clock
    await store.upsert(SessionRecord(session_id="abc", total_sentences=1))
    await store.upsert(SessionRecord(session_id="abc", total_sentences=2))

    loaded = await store.get("abc")
    assert loaded is not None
    assert loaded.total_sentences == 2


@pytest.mark.anyio
async def test_expired_records_read_as_missing_and_purge(store_and_clock) -> None:
    store, clock = store_and_clock
    await store.upsert(SessionRecord(session_id="old"))
    clock.now += 30
    await store.upsert(SessionRecord(session_id="new"))

    clock.now += 45
    assert await store.get("old") is None
    assert await store.get("new") is not None

    assert await store.purge_expired() == 1
    assert await store.purge_expired() == 0


@pytest.mark.anyio
async def test_upsert_refreshes_expiry(store_and_clock) -> None:
    store, clock = store_and_clock
    await store.upsert(SessionRecord(session_id="abc"))
    clock.now += 50
    await store.upsert(SessionRecord(session_id="abc", total_sentences=3))
    clock.now += 50
    assert await store.get("abc") is not None


@pytest.mark.anyio
async def test_delete(store_and_clock) -> None:
    store, _ = store_and_clock
    await store.upsert(SessionRecord(session_id="abc"))
    assert await store.delete("abc") is True
    assert await store.delete("abc") is False
    assert await store.get("abc") is None


def test_record_from_dict_ignores_unknown_keys() -> None:
    record = SessionRecord.from_dict(
        {"session_id": "x", "current_phase": "closing", "legacy": 1}
    )
    assert record.current_phase is SessionPhase.CLOSING
    assert record.to_dict()["current_phase"] == "closing"
