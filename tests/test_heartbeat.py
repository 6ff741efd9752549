from corujao.config import ChatRuntimeConfig
from corujao.connection import ConnState
from corujao.service import ChatService
from corujao.store import MemoryStore


class FakeConn:
    def __init__(self, connection_id: str, username: str, state: ConnState = ConnState.IDLE) -> None:
        self.connection_id = connection_id
        self.username = username
        self.state = state
        self.awaiting_pong: float | None = None
        self.received: list[dict] = []

    def deliver(self, envelope: dict) -> bool:
        self.received.append(envelope)
        return True


def _service(**overrides) -> ChatService:
    cfg = ChatRuntimeConfig(ping_interval_s=10.0, ping_timeout_s=30.0, **overrides)
    return ChatService(cfg, store=MemoryStore())


def _add(svc: ChatService, conn: FakeConn) -> FakeConn:
    svc.registry.register(conn)
    svc.registry.join(conn.connection_id, svc.registry.default_room)
    return conn


def test_idle_connection_is_pinged_once_until_it_answers() -> None:
    svc = _service()
    conn = _add(svc, FakeConn("c1", "alice"))

    to_ping, to_close = svc.check_heartbeats(100.0)
    assert to_ping == [conn]
    assert to_close == []
    assert conn.awaiting_pong == 100.0

    # Still waiting: no second ping, not yet timed out.
    to_ping, to_close = svc.check_heartbeats(120.0)
    assert to_ping == []
    assert to_close == []


def test_silent_connection_times_out() -> None:
    svc = _service()
    conn = _add(svc, FakeConn("c1", "alice"))
    svc.check_heartbeats(100.0)

    _, to_close = svc.check_heartbeats(130.0)
    assert to_close == []
    _, to_close = svc.check_heartbeats(130.5)
    assert to_close == [conn]


def test_any_inbound_frame_resets_the_clock() -> None:
    svc = _service()
    conn = _add(svc, FakeConn("c1", "alice"))
    svc.check_heartbeats(100.0)

    conn.awaiting_pong = None
    to_ping, to_close = svc.check_heartbeats(200.0)
    assert to_ping == [conn]
    assert to_close == []


def test_connections_not_yet_idle_are_skipped() -> None:
    svc = _service()
    _add(svc, FakeConn("c1", "alice", state=ConnState.AUTHENTICATING))
    _add(svc, FakeConn("c2", "bob", state=ConnState.CLOSED))

    assert svc.check_heartbeats(100.0) == ([], [])


def test_zero_timeout_never_closes() -> None:
    svc = ChatService(ChatRuntimeConfig(ping_timeout_s=0), store=MemoryStore())
    _add(svc, FakeConn("c1", "alice"))
    svc.check_heartbeats(0.0)

    assert svc.check_heartbeats(10_000.0) == ([], [])


def test_maintenance_prunes_empty_rooms() -> None:
    svc = _service()
    conn = _add(svc, FakeConn("c1", "alice"))
    svc.registry.switch(conn.connection_id, "x")
    svc.registry.switch(conn.connection_id, "geral")

    result = svc.run_maintenance()
    assert result["rooms_pruned"] == 1
    assert [r.name for r in svc.registry.list_rooms()] == ["geral"]
