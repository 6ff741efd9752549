from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .constants import ROLE_ADMIN, ROLE_USER


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    role: str = ROLE_USER
    last_seen: float | None = None


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    username: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class Session:
    token: str
    user_id: str
    username: str
    role: str
    created_at: float
    expires_at: float

    def identity(self) -> UserIdentity:
        return UserIdentity(user_id=self.user_id, username=self.username, role=self.role)


@dataclass(frozen=True)
class Message:
    id: str
    author: str
    text: str
    room: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.author,
            "text": self.text,
            "room": self.room,
            "ts": int(self.created_at * 1000),
        }
