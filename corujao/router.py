from __future__ import annotations

import logging
import time
import uuid
from functools import partial
from typing import TYPE_CHECKING, Any

from .constants import (
    CLOSE_NORMAL,
    K_BODY,
    K_ID,
    K_ROOM,
    K_T,
    SCOPE_MESSAGE,
    SYS_DURABILITY,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_LOGIN,
    T_PONG,
    T_SEND_MESSAGE,
)
from .errors import ChatError, ValidationError
from .events import Ack, ChatMessage, ErrorNotice, RateLimitExceeded, SystemMessage
from .messagelog import ResultCallback
from .models import Message
from .util import normalize_text

if TYPE_CHECKING:
    from .connection import ConnectionHandler
    from .service import ChatService

_NOT_DURABLE = "message delivered but not saved; it will be missing from history"


class MessageRouter:
    """
    Handles client events for an authenticated connection.

    This class is responsible for:
    - Dispatching envelopes by type (join_room, leave_room, send_message, pong)
    - Per-user message rate limiting
    - Validating chat text and broadcasting it to the sender's room
    - Handing messages to the durable log without waiting on it
    - Acknowledging ``send_message`` envelopes that carry an ``id``
    """

    def __init__(self, service: ChatService) -> None:
        self.service = service
        self.log = logging.getLogger("corujao.router")

    async def route(self, conn: ConnectionHandler, env: dict) -> None:
        t = env.get(K_T)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX user=%s conn=%s t=%s room=%r", conn.username, conn.connection_id, t, env.get(K_ROOM)
            )

        if t == T_SEND_MESSAGE:
            await self._handle_send_message(conn, env)
        elif t == T_JOIN_ROOM:
            await self._handle_join_room(conn, env)
        elif t == T_LEAVE_ROOM:
            await self._handle_leave_room(conn, env)
        elif t == T_PONG:
            # Liveness is already recorded for every inbound frame.
            return
        elif t == T_LOGIN:
            self._reject(conn, env, ChatError("already logged in", code="already_authenticated"))
        else:
            self._reject(conn, env, ChatError(f"unsupported event type: {t}", code="unknown_event"))

    async def _handle_join_room(self, conn: ConnectionHandler, env: dict) -> None:
        body = env.get(K_BODY)
        name: Any = env.get(K_ROOM)
        if isinstance(body, dict) and "room" in body:
            name = body.get("room")
        elif isinstance(body, str):
            name = body

        if name is None:
            self._reject(conn, env, ValidationError("join_room requires a room name", code="invalid_room"))
            return
        try:
            await conn.change_room(name)
        except ChatError as e:
            self._reject(conn, env, e)
            return
        self._ack(conn, env, ok=True)

    async def _handle_leave_room(self, conn: ConnectionHandler, env: dict) -> None:
        default_room = self.service.registry.default_room
        if conn.current_room == default_room:
            conn.send_event(SystemMessage(f"you are in {default_room}, the default room", default_room))
        else:
            await conn.change_room(default_room)
        self._ack(conn, env, ok=True)

    async def _handle_send_message(self, conn: ConnectionHandler, env: dict) -> None:
        svc = self.service
        identity = conn.identity
        if identity is None:
            return

        admission = svc.message_gate.admit(identity.user_id)
        if not admission.allowed:
            svc.stats_manager.inc("rate_limited")
            conn.send_event(
                RateLimitExceeded(SCOPE_MESSAGE, admission.retry_after_ms, "too many messages")
            )
            self._ack(
                conn,
                env,
                ok=False,
                code="rate_limited",
                error="rate limit exceeded",
                extra={"retry_after_ms": admission.retry_after_ms},
            )
            return

        body = env.get(K_BODY)
        text = body.get("text") if isinstance(body, dict) else body

        if isinstance(text, str) and text.lstrip().startswith("/"):
            svc.stats_manager.inc("commands")
            result = await svc.dispatcher.dispatch(conn, text)
            for event in result.events:
                conn.send_event(event)
            self._ack(conn, env, ok=True)
            if result.close:
                conn.request_close(CLOSE_NORMAL, "logout")
            return

        try:
            clean = normalize_text(text, max_chars=svc.config.max_message_chars)
        except ValueError as e:
            self._reject(conn, env, ValidationError(str(e)))
            return

        if svc.moderation.is_muted(identity.username):
            self._reject(conn, env, ChatError("you are muted", code="muted"))
            return

        room = conn.current_room
        if room is None:
            return
        target = env.get(K_ROOM)
        if target is not None:
            try:
                target = svc.registry.normalize_room(target)
            except ValueError as e:
                self._reject(conn, env, ValidationError(f"invalid room: {e}", code="invalid_room"))
                return
            if target != room:
                self._reject(
                    conn, env, ValidationError(f"you are not in room {target}", code="not_in_room")
                )
                return

        message, delivered, durable = self.publish(
            identity.username, room, clean, partial(self._on_persisted, conn)
        )
        if not durable:
            conn.send_event(SystemMessage(_NOT_DURABLE, room, kind=SYS_DURABILITY))

        self._ack(conn, env, ok=True, extra={"message_id": message.id, "delivered": delivered})

    def publish(
        self,
        author: str,
        room: str,
        text: str,
        on_result: ResultCallback | None = None,
    ) -> tuple[Message, int, bool]:
        """Broadcast already-validated ``text`` to ``room`` and queue it for the log.

        Returns ``(message, delivered, durable)``; ``durable`` is False when
        the log refused the write.
        """
        svc = self.service
        message = Message(
            id=uuid.uuid4().hex,
            author=author,
            text=text,
            room=room,
            created_at=time.time(),
        )
        delivered = svc.registry.broadcast(room, ChatMessage(message))
        svc.stats_manager.inc("msgs_relayed")

        durable = svc.message_log.submit(message, on_result)
        if not durable:
            svc.stats_manager.inc("msgs_not_durable")
        return message, delivered, durable

    def _on_persisted(self, conn: ConnectionHandler, message: Message, error: Exception | None) -> None:
        if error is None:
            return
        self.service.stats_manager.inc("msgs_not_durable")
        conn.send_event(SystemMessage(_NOT_DURABLE, message.room, kind=SYS_DURABILITY))

    def _reject(self, conn: ConnectionHandler, env: dict, err: ChatError) -> None:
        self.service.stats_manager.inc("errors_sent")
        conn.send_event(ErrorNotice(err.code, err.message, conn.current_room))
        self._ack(conn, env, ok=False, code=err.code, error=err.message)

    def _ack(
        self,
        conn: ConnectionHandler,
        env: dict,
        *,
        ok: bool,
        code: str | None = None,
        error: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        ref = env.get(K_ID)
        if ref is None:
            return
        conn.send_event(Ack(ref=ref, ok=ok, code=code, error=error, extra=extra or {}))
