"""Document store collaborators.

The chat core only talks to :class:`DocumentStore`. ``MemoryStore`` keeps
everything in process (default, tests); ``MongoStore`` persists to MongoDB
through ``pymongo``. Both are synchronous and are always called through
:func:`call_store`, which moves the call to a worker thread and bounds it with
a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from .constants import ROLE_USER, ROLES
from .errors import DuplicateUserError, PersistenceError
from .models import Message, User
from .util import username_key

if TYPE_CHECKING:
    from .config import ChatRuntimeConfig

T = TypeVar("T")

log = logging.getLogger("corujao.store")


class DocumentStore:
    """Operations the chat core needs from its persistence collaborator."""

    def find_user_by_name(self, username: str) -> User | None:
        raise NotImplementedError

    def get_user(self, user_id: str) -> User | None:
        raise NotImplementedError

    def create_user(self, username: str, password_hash: str, role: str = ROLE_USER) -> User:
        raise NotImplementedError

    def set_user_role(self, username: str, role: str) -> bool:
        raise NotImplementedError

    def update_last_seen(self, user_id: str, ts: float) -> None:
        raise NotImplementedError

    def append_message(self, message: Message) -> None:
        raise NotImplementedError

    def query_messages(self, room: str, limit: int) -> list[Message]:
        """Return the newest ``limit`` messages of ``room``, oldest first."""
        raise NotImplementedError

    def upsert_ranking_score(self, nick: str, points: int) -> None:
        raise NotImplementedError

    def top_ranking(self, limit: int) -> list[tuple[str, int]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(DocumentStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}  # username key -> user
        self._users_by_id: dict[str, User] = {}
        self._messages: dict[str, list[Message]] = {}
        self._ranking: dict[str, int] = {}

    def find_user_by_name(self, username: str) -> User | None:
        with self._lock:
            return self._users.get(username_key(username))

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users_by_id.get(user_id)

    def create_user(self, username: str, password_hash: str, role: str = ROLE_USER) -> User:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        key = username_key(username)
        with self._lock:
            if key in self._users:
                raise DuplicateUserError(f"username {username!r} is already taken")
            user = User(
                id=uuid.uuid4().hex,
                username=username,
                password_hash=password_hash,
                role=role,
                last_seen=None,
            )
            self._users[key] = user
            self._users_by_id[user.id] = user
            return user

    def set_user_role(self, username: str, role: str) -> bool:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        with self._lock:
            user = self._users.get(username_key(username))
            if user is None:
                return False
            user.role = role
            return True

    def update_last_seen(self, user_id: str, ts: float) -> None:
        with self._lock:
            user = self._users_by_id.get(user_id)
            if user is not None:
                user.last_seen = float(ts)

    def append_message(self, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(message.room, []).append(message)

    def query_messages(self, room: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._messages.get(room, [])[-limit:])

    def upsert_ranking_score(self, nick: str, points: int) -> None:
        with self._lock:
            self._ranking[nick] = int(points)

    def top_ranking(self, limit: int) -> list[tuple[str, int]]:
        with self._lock:
            items = sorted(self._ranking.items(), key=lambda x: (-x[1], x[0]))
        return items[: max(0, limit)]


class MongoStore(DocumentStore):
    """MongoDB-backed store (collections ``users``, ``messages``, ``ranking``)."""

    def __init__(self, uri: str, database: str, *, timeout_s: float = 5.0) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=int(timeout_s * 1000),
            connectTimeoutMS=int(timeout_s * 1000),
            socketTimeoutMS=int(timeout_s * 1000),
        )
        self._db = self._client[database]
        self._users = self._db["users"]
        self._messages = self._db["messages"]
        self._ranking = self._db["ranking"]
        self._descending = DESCENDING
        self._indexes_ready = False
        self._indexes = {
            "users": [("username_key", ASCENDING)],
            "messages": [("room", ASCENDING), ("created_at", ASCENDING)],
            "ranking": [("nick", ASCENDING)],
        }

    def _ensure_indexes(self) -> None:
        # Deferred so that constructing the store never blocks on the network.
        if self._indexes_ready:
            return
        self._users.create_index(self._indexes["users"], unique=True)
        self._messages.create_index(self._indexes["messages"])
        self._ranking.create_index(self._indexes["ranking"], unique=True)
        self._indexes_ready = True

    @staticmethod
    def _user_from_doc(doc: dict[str, Any] | None) -> User | None:
        if not doc:
            return None
        return User(
            id=str(doc["_id"]),
            username=str(doc["username"]),
            password_hash=str(doc["password_hash"]),
            role=str(doc.get("role") or ROLE_USER),
            last_seen=doc.get("last_seen"),
        )

    def find_user_by_name(self, username: str) -> User | None:
        self._ensure_indexes()
        return self._user_from_doc(self._users.find_one({"username_key": username_key(username)}))

    def get_user(self, user_id: str) -> User | None:
        self._ensure_indexes()
        return self._user_from_doc(self._users.find_one({"_id": user_id}))

    def create_user(self, username: str, password_hash: str, role: str = ROLE_USER) -> User:
        from pymongo.errors import DuplicateKeyError

        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        self._ensure_indexes()
        doc = {
            "_id": uuid.uuid4().hex,
            "username": username,
            "username_key": username_key(username),
            "password_hash": password_hash,
            "role": role,
            "last_seen": None,
            "created_at": time.time(),
        }
        try:
            self._users.insert_one(doc)
        except DuplicateKeyError as e:
            raise DuplicateUserError(f"username {username!r} is already taken") from e
        return self._user_from_doc(doc)  # type: ignore[return-value]

    def set_user_role(self, username: str, role: str) -> bool:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        self._ensure_indexes()
        res = self._users.update_one(
            {"username_key": username_key(username)}, {"$set": {"role": role}}
        )
        return res.matched_count > 0

    def update_last_seen(self, user_id: str, ts: float) -> None:
        self._users.update_one({"_id": user_id}, {"$set": {"last_seen": float(ts)}})

    def append_message(self, message: Message) -> None:
        self._ensure_indexes()
        self._messages.insert_one(
            {
                "_id": message.id,
                "author": message.author,
                "text": message.text,
                "room": message.room,
                "created_at": message.created_at,
            }
        )

    def query_messages(self, room: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        self._ensure_indexes()
        cursor = (
            self._messages.find({"room": room})
            .sort("created_at", self._descending)
            .limit(int(limit))
        )
        out = [
            Message(
                id=str(doc["_id"]),
                author=str(doc["author"]),
                text=str(doc["text"]),
                room=str(doc["room"]),
                created_at=float(doc["created_at"]),
            )
            for doc in cursor
        ]
        out.reverse()
        return out

    def upsert_ranking_score(self, nick: str, points: int) -> None:
        self._ensure_indexes()
        self._ranking.update_one({"nick": nick}, {"$set": {"points": int(points)}}, upsert=True)

    def top_ranking(self, limit: int) -> list[tuple[str, int]]:
        cursor = self._ranking.find().sort("points", self._descending).limit(int(limit))
        return [(str(doc["nick"]), int(doc.get("points", 0))) for doc in cursor]

    def close(self) -> None:
        self._client.close()


def open_store(cfg: ChatRuntimeConfig) -> DocumentStore:
    if cfg.mongo_uri:
        log.info("Using MongoDB store database=%s", cfg.mongo_database)
        return MongoStore(cfg.mongo_uri, cfg.mongo_database, timeout_s=cfg.store_timeout_s)
    log.warning("No mongo_uri configured; users and messages are kept in memory only")
    return MemoryStore()


async def call_store(fn: Callable[..., T], *args: Any, timeout_s: float) -> T:
    """Run a blocking store operation off the event loop with a bounded timeout.

    Timeouts and driver failures become :class:`PersistenceError`; domain
    errors raised by the store (e.g. :class:`DuplicateUserError`) propagate.
    """
    name = getattr(fn, "__name__", "store call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise PersistenceError(f"{name} timed out after {timeout_s:g}s") from e
    except (DuplicateUserError, ValueError):
        raise
    except Exception as e:
        raise PersistenceError(f"{name} failed: {e}") from e
