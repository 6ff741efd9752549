"""Per-connection state machine for the WebSocket boundary.

A connection moves through ``CONNECTING -> AUTHENTICATING -> IDLE -> CLOSED``.
Each connection runs a reader task (frames in, one at a time) and a writer
task draining a bounded outbound queue, so a slow client never blocks a
broadcast to anyone else.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from .codec import decode, decode_text, encode, encode_text
from .constants import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    CLOSE_PROTOCOL_ERROR,
    CLOSE_SERVER_ERROR,
    CLOSE_TOO_BIG,
    K_BODY,
    K_T,
    SCOPE_AUTH,
    SCOPE_CONNECT,
    SYS_JOIN,
    SYS_LEAVE,
    SYS_NOTICE,
    SYS_ROOM_CHANGE,
    SYS_WELCOME,
    T_LOGIN,
)
from .envelope import validate_envelope
from .errors import (
    AuthError,
    ChatError,
    PersistenceError,
    ProtocolError,
    RateLimitError,
    ValidationError,
)
from .events import (
    AuthErrorEvent,
    ErrorNotice,
    PreviousMessages,
    RateLimitExceeded,
    RoomList,
    ServerEvent,
    SystemMessage,
    UserList,
)
from .models import UserIdentity
from .store import call_store

if TYPE_CHECKING:
    from starlette.websockets import WebSocket

    from .service import ChatService


class ConnState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    IDLE = "idle"
    CLOSED = "closed"


class ConnectionHandler:
    def __init__(
        self,
        service: ChatService,
        websocket: WebSocket,
        *,
        source: str,
        token: str | None = None,
    ) -> None:
        self.service = service
        self.websocket = websocket
        self.source = source
        self.token = token
        self.connection_id = uuid.uuid4().hex
        self.log = logging.getLogger("corujao.connection")

        self.state = ConnState.CONNECTING
        self.identity: UserIdentity | None = None
        self.current_room: str | None = None
        self.joined_at: float | None = None
        # Replies use CBOR once the client has sent a binary frame.
        self.binary = False
        self.awaiting_pong: float | None = None

        self._outbound: asyncio.Queue[bytes | str | None] = asyncio.Queue(
            maxsize=max(1, int(service.config.outbound_queue_size))
        )
        self._reader: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._registered = False
        self._peer_closed = False
        self._close_code: int | None = None
        self._close_reason = ""

    @property
    def username(self) -> str | None:
        return self.identity.username if self.identity is not None else None

    @property
    def closing(self) -> bool:
        return self._close_code is not None

    def deliver(self, envelope: dict) -> bool:
        """Queue an envelope for the writer. Never blocks.

        A client whose queue is full is too slow to keep up; it is closed
        rather than allowed to hold back anyone else.
        """
        if self.state is ConnState.CLOSED or self._close_code is not None:
            return False
        payload = encode(envelope) if self.binary else encode_text(envelope)
        try:
            self._outbound.put_nowait(payload)
        except asyncio.QueueFull:
            self.service.stats_manager.inc("slow_consumers")
            self.log.warning(
                "Outbound queue full; closing slow consumer conn=%s user=%s",
                self.connection_id,
                self.username,
            )
            self.request_close(CLOSE_POLICY_VIOLATION, "too slow")
            return False
        return True

    def send_event(self, event: ServerEvent) -> bool:
        return self.deliver(event.to_envelope())

    def request_close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Ask the connection to shut down. Safe to call more than once."""
        if self._close_code is None:
            self._close_code = int(code)
            self._close_reason = reason
        reader = self._reader
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()

    async def run(self) -> None:
        svc = self.service
        await self.websocket.accept()
        self.state = ConnState.AUTHENTICATING
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.connection_id[:8]}")

        try:
            admission = svc.connect_gate.admit(self.source)
            if not admission.allowed:
                svc.stats_manager.inc("connections_rejected")
                self.log.info(
                    "Connection refused source=%s retry_after_ms=%s",
                    self.source,
                    admission.retry_after_ms,
                )
                self.send_event(
                    RateLimitExceeded(SCOPE_CONNECT, admission.retry_after_ms, "too many connections")
                )
                self.request_close(CLOSE_POLICY_VIOLATION, "rate limited")
                return

            svc.stats_manager.inc("connections")
            self._reader = asyncio.create_task(self._session(), name=f"ws-reader-{self.connection_id[:8]}")
            try:
                await self._reader
            except asyncio.CancelledError:
                if self._close_code is None:
                    raise
            except ProtocolError as e:
                svc.stats_manager.inc("frames_bad")
                self.log.info(
                    "Protocol error conn=%s user=%s err=%s", self.connection_id, self.username, e
                )
                self.send_event(ErrorNotice(e.code, e.message))
                code = CLOSE_TOO_BIG if e.code == "frame_too_large" else CLOSE_PROTOCOL_ERROR
                self.request_close(code, "protocol error")
            except Exception:
                self.log.exception(
                    "Unhandled error conn=%s user=%s", self.connection_id, self.username
                )
                self.request_close(CLOSE_SERVER_ERROR, "internal error")
        finally:
            await self._shutdown()

    async def _session(self) -> None:
        identity = await self._authenticate()
        if identity is None:
            return
        await self._enter_idle(identity)

        while self._close_code is None:
            env = await self._read_envelope()
            if env is None:
                return
            await self.service.router.route(self, env)

    async def _read_envelope(self) -> dict | None:
        """Read and validate one frame. Returns None once the peer has gone."""
        msg = await self.websocket.receive()
        if msg.get("type") == "websocket.disconnect":
            self._peer_closed = True
            return None

        # Any inbound frame proves liveness.
        self.awaiting_pong = None

        max_bytes = int(self.service.config.max_frame_bytes)
        data = msg.get("bytes")
        text = msg.get("text")
        try:
            if data is not None:
                size = len(data)
                if size > max_bytes:
                    raise ProtocolError(f"frame too large ({size} > {max_bytes} bytes)", code="frame_too_large")
                self.binary = True
                env = decode(data)
            elif text is not None:
                size = len(text.encode("utf-8"))
                if size > max_bytes:
                    raise ProtocolError(f"frame too large ({size} > {max_bytes} bytes)", code="frame_too_large")
                env = decode_text(text)
            else:
                raise ProtocolError("empty frame")
            validate_envelope(env)
        except ProtocolError:
            raise
        except Exception as e:
            raise ProtocolError(f"bad frame: {e}") from e

        stats = self.service.stats_manager
        stats.inc("frames_in")
        stats.inc("bytes_in", size)
        return env

    async def _authenticate(self) -> UserIdentity | None:
        svc = self.service
        cfg = svc.config

        token = self.token
        try:
            if not token:
                try:
                    env = await asyncio.wait_for(self._read_envelope(), timeout=cfg.auth_timeout_s)
                except asyncio.TimeoutError:
                    raise AuthError("no login received in time", code="auth_timeout") from None
                if env is None:
                    return None
                if env.get(K_T) != T_LOGIN:
                    raise AuthError("send a login event first", code="login_required")
                token = await self._token_from_login(env.get(K_BODY))

            identity = await svc.binder.refresh(token)
            if svc.moderation.is_banned(identity.username):
                raise AuthError("you are banned from this server", code="banned")
            if cfg.single_connection_per_user and svc.registry.connections_for_user(identity.username):
                raise AuthError("already connected from another client", code="already_connected")
        except RateLimitError as e:
            svc.stats_manager.inc("rate_limited")
            self.send_event(RateLimitExceeded(SCOPE_AUTH, e.retry_after_ms, e.message))
            self.request_close(CLOSE_POLICY_VIOLATION, "rate limited")
            return None
        except AuthError as e:
            svc.stats_manager.inc("auth_failures")
            self.log.info("Auth failed conn=%s source=%s code=%s", self.connection_id, self.source, e.code)
            self.send_event(AuthErrorEvent(e.code, e.message))
            self.request_close(CLOSE_POLICY_VIOLATION, e.code)
            return None
        except PersistenceError as e:
            self.log.warning("Auth unavailable conn=%s err=%s", self.connection_id, e)
            self.send_event(AuthErrorEvent("store_unavailable", "try again later"))
            self.request_close(CLOSE_SERVER_ERROR, "store unavailable")
            return None

        self.token = token
        return identity

    async def _token_from_login(self, body: Any) -> str:
        if isinstance(body, dict):
            token = body.get("token")
            if isinstance(token, str) and token:
                return token
            if "username" in body or "password" in body:
                admission = self.service.auth_gate.admit(self.source)
                if not admission.allowed:
                    raise RateLimitError("too many login attempts", retry_after_ms=admission.retry_after_ms)
                session = await self.service.binder.authenticate(body.get("username"), body.get("password"))
                return session.token
        raise AuthError("login requires a session token", code="session_invalid")

    async def _enter_idle(self, identity: UserIdentity) -> None:
        svc = self.service
        cfg = svc.config
        registry = svc.registry

        self.identity = identity
        registry.register(self)
        self._registered = True

        room = registry.default_room
        registry.join(self.connection_id, room)
        self.current_room = room
        self.joined_at = time.time()
        self.state = ConnState.IDLE
        svc.stats_manager.inc("joins")

        self.log.info(
            "Connected user=%s role=%s conn=%s source=%s",
            identity.username,
            identity.role,
            self.connection_id,
            self.source,
        )

        self.send_event(
            SystemMessage(f"Welcome to {cfg.server_name}, {identity.username}!", room, kind=SYS_WELCOME)
        )
        if cfg.greeting:
            self.send_event(SystemMessage(cfg.greeting, room, kind=SYS_NOTICE))
        self.send_event(RoomList(tuple(registry.list_rooms())))
        await self._replay_history(room)

        registry.broadcast(
            room,
            SystemMessage(f"{identity.username} joined {room}", room, kind=SYS_JOIN),
            exclude=(self.connection_id,),
        )
        self.broadcast_user_list(room)

    async def change_room(self, name: Any) -> str:
        """Move this connection to another room. Raises ValidationError."""
        svc = self.service
        registry = svc.registry
        try:
            room = registry.normalize_room(name)
        except ValueError as e:
            raise ValidationError(f"invalid room: {e}", code="invalid_room") from e

        if room == self.current_room:
            self.send_event(SystemMessage(f"you are already in {room}", room))
            return room

        previous = registry.switch(self.connection_id, room)
        self.current_room = room
        self.joined_at = time.time()
        svc.stats_manager.inc("joins")
        username = self.username

        if previous is not None:
            svc.stats_manager.inc("leaves")
            registry.broadcast(previous, SystemMessage(f"{username} left {previous}", previous, kind=SYS_LEAVE))
            self.broadcast_user_list(previous)

        self.log.debug("Room change user=%s from=%s to=%s", username, previous, room)
        self.send_event(SystemMessage(f"you joined {room}", room, kind=SYS_ROOM_CHANGE))
        await self._replay_history(room)
        registry.broadcast(
            room,
            SystemMessage(f"{username} joined {room}", room, kind=SYS_JOIN),
            exclude=(self.connection_id,),
        )
        self.broadcast_user_list(room)
        return room

    def broadcast_user_list(self, room: str) -> None:
        registry = self.service.registry
        registry.broadcast(room, UserList(room, tuple(registry.usernames_in(room))))

    async def _replay_history(self, room: str) -> None:
        svc = self.service
        limit = int(svc.config.history_limit)
        if limit <= 0:
            return
        try:
            messages = await svc.message_log.history(room, limit)
        except PersistenceError as e:
            self.log.warning("History unavailable room=%s err=%s", room, e)
            self.send_event(ErrorNotice(e.code, "history is unavailable right now", room))
            return
        self.send_event(PreviousMessages(room, tuple(messages)))

    async def _write_loop(self) -> None:
        stats = self.service.stats_manager
        while True:
            payload = await self._outbound.get()
            if payload is None:
                return
            try:
                if isinstance(payload, bytes):
                    await self.websocket.send_bytes(payload)
                else:
                    await self.websocket.send_text(payload)
            except Exception as e:
                self.log.debug("Send failed conn=%s err=%s", self.connection_id, e)
                self._peer_closed = True
                self.request_close(CLOSE_GOING_AWAY, "send failed")
                return
            stats.inc("bytes_out", len(payload))

    async def _shutdown(self) -> None:
        svc = self.service
        was_idle = self.state is ConnState.IDLE
        self.state = ConnState.CLOSED

        if self._registered:
            self._registered = False
            room = svc.registry.unregister(self.connection_id)
            if room is not None:
                svc.stats_manager.inc("leaves")
                svc.registry.broadcast(
                    room, SystemMessage(f"{self.username} left {room}", room, kind=SYS_LEAVE)
                )
                self.broadcast_user_list(room)

        if was_idle and self.identity is not None:
            self.log.info(
                "Disconnected user=%s conn=%s code=%s reason=%s",
                self.identity.username,
                self.connection_id,
                self._close_code,
                self._close_reason or "-",
            )
            try:
                await call_store(
                    svc.store.update_last_seen,
                    self.identity.user_id,
                    time.time(),
                    timeout_s=svc.config.store_timeout_s,
                )
            except ChatError as e:
                self.log.warning("last_seen not updated user=%s err=%s", self.identity.username, e)

        writer = self._writer
        if writer is not None:
            try:
                self._outbound.put_nowait(None)
            except asyncio.QueueFull:
                writer.cancel()
            try:
                await asyncio.wait_for(writer, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        if not self._peer_closed:
            try:
                await self.websocket.close(code=self._close_code or CLOSE_NORMAL, reason=self._close_reason)
            except Exception:
                self.log.debug("Close failed conn=%s", self.connection_id, exc_info=True)
