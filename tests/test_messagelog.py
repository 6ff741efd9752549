import pytest

from corujao.errors import PersistenceError
from corujao.messagelog import MessageLog
from corujao.models import Message
from corujao.store import MemoryStore


class FlakyStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.failing = False
        self.attempts = 0

    def append_message(self, message):
        self.attempts += 1
        if self.failing:
            raise ConnectionError("store unreachable")
        super().append_message(message)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _msg(i: int, room: str = "geral", author: str = "alice") -> Message:
    return Message(id=f"m{i}", author=author, text=f"hello {i}", room=room, created_at=1000.0 + i)


@pytest.mark.asyncio
async def test_history_round_trip_preserves_text_author_and_room() -> None:
    log = MessageLog(MemoryStore())
    await log.start()
    try:
        sent = _msg(1, room="x")
        assert log.submit(sent)
        await log.drain()

        history = await log.history("x", 10)
        assert len(history) == 1
        got = history[0]
        assert (got.text, got.author, got.room) == (sent.text, sent.author, sent.room)

        # Reading again yields the same result.
        assert await log.history("x", 10) == history
    finally:
        await log.stop()


@pytest.mark.asyncio
async def test_writes_keep_submission_order() -> None:
    log = MessageLog(MemoryStore())
    await log.start()
    try:
        for i in range(20):
            assert log.submit(_msg(i))
        await log.drain()
        history = await log.history("geral", 100)
        assert [m.id for m in history] == [f"m{i}" for i in range(20)]
    finally:
        await log.stop()


@pytest.mark.asyncio
async def test_history_returns_newest_oldest_first() -> None:
    store = MemoryStore()
    for i in range(10):
        store.append_message(_msg(i))
    log = MessageLog(store)
    history = await log.history("geral", 3)
    assert [m.id for m in history] == ["m7", "m8", "m9"]
    assert await log.history("elsewhere", 3) == []


@pytest.mark.asyncio
async def test_failure_is_reported_to_callback() -> None:
    store = FlakyStore()
    store.failing = True
    log = MessageLog(store, failure_threshold=10)
    results: list[tuple[str, Exception | None]] = []

    await log.start()
    try:
        log.submit(_msg(1), lambda m, err: results.append((m.id, err)))
        await log.drain()
    finally:
        await log.stop()

    assert len(results) == 1
    assert results[0][0] == "m1"
    assert isinstance(results[0][1], PersistenceError)


@pytest.mark.asyncio
async def test_repeated_failures_mark_store_unhealthy_then_trial_write_recovers() -> None:
    store = FlakyStore()
    store.failing = True
    clock = FakeClock()
    log = MessageLog(store, failure_threshold=3, recovery_s=30.0, clock=clock)

    for i in range(3):
        with pytest.raises(PersistenceError):
            await log.append(_msg(i))
    assert not log.healthy

    # Refused without touching the store.
    attempts = store.attempts
    assert log.submit(_msg(10)) is False
    with pytest.raises(PersistenceError):
        await log.append(_msg(11))
    assert store.attempts == attempts

    # A failed trial write keeps the store unhealthy for another period.
    clock.now += 30.0
    with pytest.raises(PersistenceError):
        await log.append(_msg(12))
    assert not log.healthy

    clock.now += 30.0
    store.failing = False
    await log.append(_msg(13))
    assert log.healthy
    assert [m.id for m in await log.history("geral", 10)] == ["m13"]


@pytest.mark.asyncio
async def test_full_queue_refuses_instead_of_growing() -> None:
    log = MessageLog(MemoryStore(), queue_size=2)
    # Writer not started: nothing drains the queue.
    assert log.submit(_msg(1))
    assert log.submit(_msg(2))
    assert log.submit(_msg(3)) is False
    assert log.get_stats()["refused"] == 1

    await log.start()
    await log.drain()
    await log.stop()
    assert len(await log.history("geral", 10)) == 2


@pytest.mark.asyncio
async def test_stop_drains_pending_writes() -> None:
    log = MessageLog(MemoryStore())
    await log.start()
    for i in range(5):
        log.submit(_msg(i))
    await log.stop()
    assert len(await log.history("geral", 10)) == 5
