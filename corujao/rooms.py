"""Room membership and broadcast for the Corujão relay.

This module handles:
- Connection registration (connection id -> deliverable member)
- Room membership, one current room per connection
- Atomic room switching
- Broadcast fan-out over a membership snapshot
- Lazy pruning of empty rooms
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .events import RoomInfo, ServerEvent
from .util import normalize_room

if TYPE_CHECKING:
    from .connection import ConnectionHandler


@dataclass
class Room:
    name: str
    members: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)


class RoomRegistry:
    """
    Shared in-memory room state.

    Members are objects exposing ``connection_id``, ``username`` and a
    non-blocking ``deliver(envelope) -> bool`` (see
    :class:`corujao.connection.ConnectionHandler`).

    All state is guarded by one re-entrant lock. The lock is never held while
    delivering: broadcasts take a snapshot of the recipients under the lock and
    deliver after releasing it.
    """

    def __init__(
        self,
        default_room: str = "geral",
        *,
        max_room_name_len: int = 32,
        allowed_rooms: Iterable[str] = (),
    ) -> None:
        self.log = logging.getLogger("corujao.rooms")
        self.max_room_name_len = int(max_room_name_len)
        self.default_room = normalize_room(default_room, max_len=self.max_room_name_len)
        self.allowed_rooms = frozenset(
            normalize_room(r, max_len=self.max_room_name_len) for r in allowed_rooms
        )

        self._lock = threading.RLock()
        self._rooms: dict[str, Room] = {self.default_room: Room(self.default_room)}
        self._members: dict[str, ConnectionHandler] = {}
        self._where: dict[str, str] = {}  # connection id -> current room

    def normalize_room(self, name: str) -> str:
        """Validate and canonicalize a room name. Raises ValueError."""
        r = normalize_room(name, max_len=self.max_room_name_len)
        if self.allowed_rooms and r != self.default_room and r not in self.allowed_rooms:
            raise ValueError(f"room {r} is not available")
        return r

    def register(self, member: ConnectionHandler) -> None:
        with self._lock:
            self._members[member.connection_id] = member

    def unregister(self, connection_id: str) -> str | None:
        """Forget a connection, leaving its room. Returns the room it was in."""
        with self._lock:
            room = self._where.pop(connection_id, None)
            if room is not None:
                r = self._rooms.get(room)
                if r is not None:
                    r.members.discard(connection_id)
            self._members.pop(connection_id, None)
            return room

    def join(self, connection_id: str, room: str) -> bool:
        """
        Put a connection in ``room``.

        Idempotent. A connection is in at most one room, so joining while in
        another room moves it (same as :meth:`switch`). Returns True if the
        membership changed.
        """
        with self._lock:
            if connection_id not in self._members:
                raise KeyError(f"unknown connection {connection_id}")
            current = self._where.get(connection_id)
            if current == room:
                return False
            if current is not None:
                self._rooms[current].members.discard(connection_id)
            target = self._rooms.get(room)
            if target is None:
                target = Room(room)
                self._rooms[room] = target
            target.members.add(connection_id)
            self._where[connection_id] = room
            return True

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove a connection from ``room``. Idempotent; True if it was a member."""
        with self._lock:
            if self._where.get(connection_id) != room:
                return False
            self._where.pop(connection_id, None)
            r = self._rooms.get(room)
            if r is not None:
                r.members.discard(connection_id)
            return True

    def switch(self, connection_id: str, room: str) -> str | None:
        """Atomically move a connection to ``room``. Returns the previous room."""
        with self._lock:
            previous = self._where.get(connection_id)
            self.join(connection_id, room)
            return previous

    def room_of(self, connection_id: str) -> str | None:
        with self._lock:
            return self._where.get(connection_id)

    def members_of(self, room: str) -> set[str]:
        with self._lock:
            r = self._rooms.get(room)
            return set(r.members) if r is not None else set()

    def usernames_in(self, room: str) -> list[str]:
        with self._lock:
            r = self._rooms.get(room)
            if r is None:
                return []
            names = {
                self._members[cid].username
                for cid in r.members
                if cid in self._members and self._members[cid].username
            }
        return sorted(names, key=str.lower)

    def list_rooms(self) -> list[RoomInfo]:
        with self._lock:
            infos = [RoomInfo(name=r.name, member_count=len(r.members)) for r in self._rooms.values()]
        return sorted(infos, key=lambda i: i.name)

    def get_member(self, connection_id: str) -> ConnectionHandler | None:
        with self._lock:
            return self._members.get(connection_id)

    def connections_for_user(self, username: str) -> list[ConnectionHandler]:
        key = username.strip().lower()
        with self._lock:
            return [m for m in self._members.values() if (m.username or "").lower() == key]

    def all_connections(self) -> list[ConnectionHandler]:
        with self._lock:
            return list(self._members.values())

    def snapshot(self) -> dict[str, set[str]]:
        """Consistent copy of every room's membership."""
        with self._lock:
            return {name: set(r.members) for name, r in self._rooms.items()}

    def broadcast(
        self,
        room: str,
        event: ServerEvent,
        *,
        exclude: Iterable[str] = (),
    ) -> int:
        """
        Deliver ``event`` to every current member of ``room``.

        Returns the number of members the event was handed to. One failing
        member never prevents delivery to the others.
        """
        skip = set(exclude)
        with self._lock:
            r = self._rooms.get(room)
            if r is None:
                return 0
            recipients = [
                self._members[cid]
                for cid in r.members
                if cid not in skip and cid in self._members
            ]

        envelope = event.to_envelope()
        delivered = 0
        for member in recipients:
            try:
                if member.deliver(envelope):
                    delivered += 1
            except Exception:
                self.log.warning(
                    "Delivery failed room=%s conn=%s",
                    room,
                    member.connection_id,
                    exc_info=True,
                )
        return delivered

    def broadcast_all(self, event: ServerEvent) -> int:
        """Deliver ``event`` to every registered connection."""
        with self._lock:
            recipients = list(self._members.values())
        envelope = event.to_envelope()
        delivered = 0
        for member in recipients:
            try:
                if member.deliver(envelope):
                    delivered += 1
            except Exception:
                self.log.warning("Delivery failed conn=%s", member.connection_id, exc_info=True)
        return delivered

    def send_to(self, connection_id: str, event: ServerEvent) -> bool:
        member = self.get_member(connection_id)
        if member is None:
            return False
        try:
            return bool(member.deliver(event.to_envelope()))
        except Exception:
            self.log.warning("Delivery failed conn=%s", connection_id, exc_info=True)
            return False

    def prune_empty(self) -> list[str]:
        """
        Drop rooms with no members (never the default room).

        Runs under the same lock as :meth:`join`, so a room that gains a member
        concurrently is either kept or recreated by that join.
        """
        with self._lock:
            empty = [
                name
                for name, r in self._rooms.items()
                if not r.members and name != self.default_room
            ]
            for name in empty:
                self._rooms.pop(name, None)
        if empty:
            self.log.debug("Pruned empty rooms: %s", ", ".join(empty))
        return empty

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            rooms_total = len(self._rooms)
            memberships = sum(len(r.members) for r in self._rooms.values())
            top_rooms = sorted(
                ((r.name, len(r.members)) for r in self._rooms.values()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            connections = len(self._members)
        return {
            "rooms_total": rooms_total,
            "memberships": memberships,
            "top_rooms": top_rooms,
            "connections": connections,
        }
