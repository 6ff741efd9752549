"""Server -> client events.

Each event type is its own frozen dataclass with typed fields; ``to_envelope()``
produces the wire envelope. Nothing else is ever sent to a client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from .constants import (
    SYS_NOTICE,
    T_ACK,
    T_AUTH_ERROR,
    T_CHAT_MESSAGE,
    T_CLEAR_SCREEN,
    T_ERROR,
    T_PING,
    T_PREVIOUS_MESSAGES,
    T_RATE_LIMIT_EXCEEDED,
    T_ROOM_LIST,
    T_SYSTEM_MESSAGE,
    T_USER_LIST,
)
from .envelope import make_envelope
from .models import Message


@dataclass(frozen=True)
class ServerEvent:
    type: ClassVar[str]

    @property
    def room(self) -> str | None:
        return None

    def body(self) -> dict[str, Any] | None:
        return None

    def to_envelope(self) -> dict:
        return make_envelope(self.type, room=self.room, body=self.body())


@dataclass(frozen=True)
class SystemMessage(ServerEvent):
    type: ClassVar[str] = T_SYSTEM_MESSAGE

    text: str
    target_room: str | None = None
    kind: str = SYS_NOTICE

    @property
    def room(self) -> str | None:
        return self.target_room

    def body(self) -> dict[str, Any]:
        return {"text": self.text, "kind": self.kind}


@dataclass(frozen=True)
class ChatMessage(ServerEvent):
    type: ClassVar[str] = T_CHAT_MESSAGE

    message: Message

    @property
    def room(self) -> str | None:
        return self.message.room

    def body(self) -> dict[str, Any]:
        return self.message.to_dict()


@dataclass(frozen=True)
class RoomInfo:
    name: str
    member_count: int


@dataclass(frozen=True)
class RoomList(ServerEvent):
    type: ClassVar[str] = T_ROOM_LIST

    rooms: tuple[RoomInfo, ...] = ()

    def body(self) -> dict[str, Any]:
        return {"rooms": [{"name": r.name, "members": r.member_count} for r in self.rooms]}


@dataclass(frozen=True)
class UserList(ServerEvent):
    type: ClassVar[str] = T_USER_LIST

    target_room: str
    users: tuple[str, ...] = ()

    @property
    def room(self) -> str | None:
        return self.target_room

    def body(self) -> dict[str, Any]:
        return {"room": self.target_room, "users": list(self.users)}


@dataclass(frozen=True)
class AuthErrorEvent(ServerEvent):
    type: ClassVar[str] = T_AUTH_ERROR

    code: str
    reason: str

    def body(self) -> dict[str, Any]:
        return {"code": self.code, "reason": self.reason}


@dataclass(frozen=True)
class RateLimitExceeded(ServerEvent):
    type: ClassVar[str] = T_RATE_LIMIT_EXCEEDED

    scope: str
    retry_after_ms: int
    reason: str = "rate limit exceeded"

    def body(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "reason": self.reason,
            "retry_after_ms": int(self.retry_after_ms),
        }


@dataclass(frozen=True)
class PreviousMessages(ServerEvent):
    type: ClassVar[str] = T_PREVIOUS_MESSAGES

    target_room: str
    messages: tuple[Message, ...] = ()

    @property
    def room(self) -> str | None:
        return self.target_room

    def body(self) -> dict[str, Any]:
        return {"room": self.target_room, "messages": [m.to_dict() for m in self.messages]}


@dataclass(frozen=True)
class ClearScreen(ServerEvent):
    type: ClassVar[str] = T_CLEAR_SCREEN


@dataclass(frozen=True)
class Ack(ServerEvent):
    type: ClassVar[str] = T_ACK

    ref: str | int
    ok: bool
    code: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ref": self.ref, "ok": bool(self.ok)}
        if self.code is not None:
            body["code"] = self.code
        if self.error is not None:
            body["error"] = self.error
        body.update(self.extra)
        return body


@dataclass(frozen=True)
class ErrorNotice(ServerEvent):
    type: ClassVar[str] = T_ERROR

    code: str
    text: str
    target_room: str | None = None

    @property
    def room(self) -> str | None:
        return self.target_room

    def body(self) -> dict[str, Any]:
        return {"code": self.code, "text": self.text}


@dataclass(frozen=True)
class Ping(ServerEvent):
    type: ClassVar[str] = T_PING

    nonce: int

    def body(self) -> dict[str, Any]:
        return {"nonce": int(self.nonce)}
