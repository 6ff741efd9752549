import threading

import pytest

from corujao.events import SystemMessage
from corujao.rooms import RoomRegistry


class FakeMember:
    def __init__(self, connection_id: str, username: str, *, fail: bool = False) -> None:
        self.connection_id = connection_id
        self.username = username
        self.fail = fail
        self.received: list[dict] = []

    def deliver(self, envelope: dict) -> bool:
        if self.fail:
            raise RuntimeError("broken pipe")
        self.received.append(envelope)
        return True


def _registry_with(*members: FakeMember) -> RoomRegistry:
    reg = RoomRegistry("geral")
    for m in members:
        reg.register(m)
    return reg


def test_default_room_always_exists() -> None:
    reg = RoomRegistry("geral")
    assert [r.name for r in reg.list_rooms()] == ["geral"]
    assert reg.prune_empty() == []
    assert [r.name for r in reg.list_rooms()] == ["geral"]


def test_join_and_leave_are_idempotent() -> None:
    alice = FakeMember("c1", "alice")
    reg = _registry_with(alice)

    assert reg.join("c1", "x") is True
    assert reg.join("c1", "x") is False
    assert reg.members_of("x") == {"c1"}

    assert reg.leave("c1", "x") is True
    assert reg.leave("c1", "x") is False
    assert reg.members_of("x") == set()


def test_join_requires_registration() -> None:
    reg = RoomRegistry("geral")
    with pytest.raises(KeyError):
        reg.join("nope", "geral")


def test_membership_size_tracks_joins_and_leaves() -> None:
    members = [FakeMember(f"c{i}", f"user{i}") for i in range(5)]
    reg = _registry_with(*members)
    for m in members:
        reg.join(m.connection_id, "x")
    assert len(reg.members_of("x")) == 5

    reg.leave("c0", "x")
    reg.unregister("c1")
    assert reg.members_of("x") == {"c2", "c3", "c4"}


def test_switch_moves_connection_and_returns_previous_room() -> None:
    alice = FakeMember("c1", "alice")
    reg = _registry_with(alice)
    reg.join("c1", "geral")

    assert reg.switch("c1", "x") == "geral"
    assert reg.room_of("c1") == "x"
    assert "c1" not in reg.members_of("geral")
    assert reg.members_of("x") == {"c1"}


def test_broadcast_reaches_only_room_members() -> None:
    alice = FakeMember("a", "alice")
    bob = FakeMember("b", "bob")
    carol = FakeMember("c", "carol")
    reg = _registry_with(alice, bob, carol)
    reg.join("a", "x")
    reg.join("b", "x")
    reg.join("c", "y")

    delivered = reg.broadcast("x", SystemMessage("hi", "x"))

    assert delivered == 2
    assert len(alice.received) == 1
    assert len(bob.received) == 1
    assert carol.received == []


def test_broadcast_exclude_and_unknown_room() -> None:
    alice = FakeMember("a", "alice")
    bob = FakeMember("b", "bob")
    reg = _registry_with(alice, bob)
    reg.join("a", "x")
    reg.join("b", "x")

    assert reg.broadcast("x", SystemMessage("hi", "x"), exclude=("a",)) == 1
    assert alice.received == []
    assert reg.broadcast("nowhere", SystemMessage("hi")) == 0


def test_failing_member_does_not_block_others() -> None:
    broken = FakeMember("a", "alice", fail=True)
    bob = FakeMember("b", "bob")
    reg = _registry_with(broken, bob)
    reg.join("a", "x")
    reg.join("b", "x")

    assert reg.broadcast("x", SystemMessage("hi", "x")) == 1
    assert len(bob.received) == 1


def test_left_member_receives_nothing() -> None:
    alice = FakeMember("a", "alice")
    bob = FakeMember("b", "bob")
    reg = _registry_with(alice, bob)
    reg.join("a", "x")
    reg.join("b", "x")
    reg.unregister("a")

    reg.broadcast("x", SystemMessage("hi", "x"))
    assert alice.received == []
    assert len(bob.received) == 1


def test_usernames_are_sorted_and_deduplicated() -> None:
    reg = _registry_with(
        FakeMember("1", "bob"), FakeMember("2", "Alice"), FakeMember("3", "bob")
    )
    for cid in ("1", "2", "3"):
        reg.join(cid, "geral")
    assert reg.usernames_in("geral") == ["Alice", "bob"]


def test_prune_keeps_rooms_with_members() -> None:
    alice = FakeMember("a", "alice")
    reg = _registry_with(alice)
    reg.join("a", "x")
    reg.join("a", "y")

    assert reg.prune_empty() == ["x"]
    assert {r.name for r in reg.list_rooms()} == {"geral", "y"}


def test_join_after_prune_recreates_room() -> None:
    alice = FakeMember("a", "alice")
    reg = _registry_with(alice)
    reg.join("a", "x")
    reg.leave("a", "x")
    reg.prune_empty()
    reg.join("a", "x")
    assert reg.members_of("x") == {"a"}


def test_whitelist_rejects_unknown_rooms() -> None:
    reg = RoomRegistry("geral", allowed_rooms=("dev", "random"))
    assert reg.normalize_room("#Dev") == "dev"
    assert reg.normalize_room("geral") == "geral"
    with pytest.raises(ValueError):
        reg.normalize_room("secret")


def test_normalize_rejects_bad_names() -> None:
    reg = RoomRegistry("geral", max_room_name_len=8)
    for bad in ("", "   ", "way-too-long-name", "sp ace", "ümlaut", 42):
        with pytest.raises(ValueError):
            reg.normalize_room(bad)


def test_switch_is_atomic_under_concurrent_snapshots() -> None:
    members = [FakeMember(f"c{i}", f"user{i}") for i in range(8)]
    reg = _registry_with(*members)
    for m in members:
        reg.join(m.connection_id, "a")

    stop = threading.Event()
    violations: list[str] = []

    def switcher(cid: str) -> None:
        target = "b"
        while not stop.is_set():
            reg.switch(cid, target)
            target = "a" if target == "b" else "b"

    def observer() -> None:
        while not stop.is_set():
            snap = reg.snapshot()
            seen: dict[str, int] = {}
            for room_members in snap.values():
                for cid in room_members:
                    seen[cid] = seen.get(cid, 0) + 1
            for m in members:
                if seen.get(m.connection_id, 0) != 1:
                    violations.append(m.connection_id)

    threads = [threading.Thread(target=switcher, args=(m.connection_id,)) for m in members]
    threads.append(threading.Thread(target=observer))
    for t in threads:
        t.start()
    stop.wait(0.3)
    stop.set()
    for t in threads:
        t.join()

    assert violations == []


def test_send_to_targets_one_connection() -> None:
    alice = FakeMember("a", "alice")
    bob = FakeMember("b", "bob")
    reg = _registry_with(alice, bob)

    assert reg.send_to("b", SystemMessage("psst")) is True
    assert alice.received == []
    assert bob.received[0]["body"]["text"] == "psst"
    assert reg.send_to("nobody", SystemMessage("psst")) is False
    assert reg.get_member("a") is alice
