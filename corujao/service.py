from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from .accounts import AccountService
from .commands import CommandDispatcher
from .config import ChatRuntimeConfig
from .connection import ConnectionHandler, ConnState
from .constants import (
    CLOSE_GOING_AWAY,
    SCOPE_AUTH,
    SCOPE_CONNECT,
    SCOPE_MESSAGE,
    SESSION_COOKIE,
)
from .events import Ping
from .messagelog import MessageLog
from .moderation import ModerationManager
from .ratelimit import RateGate
from .rooms import RoomRegistry
from .router import MessageRouter
from .session import SessionBinder
from .stats import StatsManager
from .store import DocumentStore, open_store

if TYPE_CHECKING:
    from starlette.requests import HTTPConnection
    from starlette.websockets import WebSocket


class ChatService:
    """
    Composition root for the relay.

    Built once per process and handed to the HTTP/WebSocket boundary; every
    connection handler reaches shared state through it, never through module
    globals.
    """

    def __init__(self, config: ChatRuntimeConfig, *, store: DocumentStore | None = None) -> None:
        self.config = config
        self.log = logging.getLogger("corujao.service")

        self.store = store if store is not None else open_store(config)

        self.registry = RoomRegistry(
            config.default_room,
            max_room_name_len=config.max_room_name_len,
            allowed_rooms=config.allowed_rooms,
        )
        self.binder = SessionBinder(
            self.store,
            ttl_s=config.session_ttl_s,
            rolling=config.session_rolling,
            timeout_s=config.store_timeout_s,
            admin_users=config.admin_users,
        )
        self.accounts = AccountService(
            self.store,
            timeout_s=config.store_timeout_s,
            bcrypt_rounds=config.bcrypt_rounds,
        )
        self.message_log = MessageLog(
            self.store,
            timeout_s=config.store_timeout_s,
            queue_size=config.message_log_queue_size,
            failure_threshold=config.store_failure_threshold,
            recovery_s=config.store_recovery_s,
        )

        # Independent counters so that chatting never eats the reconnect budget.
        self.connect_gate = RateGate(SCOPE_CONNECT, config.connect_rate_limit, config.connect_rate_window_s)
        self.message_gate = RateGate(SCOPE_MESSAGE, config.message_rate_limit, config.message_rate_window_s)
        self.auth_gate = RateGate(SCOPE_AUTH, config.auth_rate_limit, config.auth_rate_window_s)

        self.moderation = ModerationManager(config.config_path, config.banned_users)
        self.stats_manager = StatsManager(self)
        self.dispatcher = CommandDispatcher(self)
        self.router = MessageRouter(self)

        self._tasks: list[asyncio.Task] = []
        self._ping_nonce = 0

    async def start(self) -> None:
        self.stats_manager.set_start_time()
        await self.message_log.start()

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="corujao-heartbeat"))
        if self.config.maintenance_interval_s and self.config.maintenance_interval_s > 0:
            self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="corujao-maintenance"))

        self.log.info(
            "Chat service running name=%s default_room=%s store=%s",
            self.config.server_name,
            self.registry.default_room,
            type(self.store).__name__,
        )
        self.log.info(
            "Policy max_message_chars=%s connect=%s/%ss message=%s/%ss auth=%s/%ss history_limit=%s",
            self.config.max_message_chars,
            self.config.connect_rate_limit,
            self.config.connect_rate_window_s,
            self.config.message_rate_limit,
            self.config.message_rate_window_s,
            self.config.auth_rate_limit,
            self.config.auth_rate_window_s,
            self.config.history_limit,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        for conn in self.registry.all_connections():
            conn.request_close(CLOSE_GOING_AWAY, "server shutting down")

        await self.message_log.stop()
        await asyncio.to_thread(self.store.close)
        self.log.info("Chat service stopped")

    def check_heartbeats(self, now: float) -> tuple[list[ConnectionHandler], list[ConnectionHandler]]:
        """
        Decide which connections to ping and which have timed out.

        A connection that was pinged and has sent nothing for longer than
        ``ping_timeout_s`` is returned in the second list. Returns
        ``(to_ping, to_close)``.
        """
        timeout = float(self.config.ping_timeout_s)
        to_ping: list[ConnectionHandler] = []
        to_close: list[ConnectionHandler] = []

        for conn in self.registry.all_connections():
            if conn.state is not ConnState.IDLE:
                continue
            awaiting = conn.awaiting_pong
            if timeout > 0 and awaiting is not None and (now - float(awaiting)) > timeout:
                to_close.append(conn)
                continue
            if awaiting is None:
                conn.awaiting_pong = now
                to_ping.append(conn)

        return to_ping, to_close

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(float(self.config.ping_interval_s))

            to_ping, to_close = self.check_heartbeats(time.monotonic())

            for conn in to_close:
                self.stats_manager.inc("heartbeat_timeouts")
                self.log.info("Ping timeout user=%s conn=%s", conn.username, conn.connection_id)
                conn.request_close(CLOSE_GOING_AWAY, "ping timeout")

            for conn in to_ping:
                self._ping_nonce += 1
                if conn.send_event(Ping(self._ping_nonce)):
                    self.stats_manager.inc("pings_out")

    def run_maintenance(self) -> dict[str, int]:
        result = {
            "rooms_pruned": len(self.registry.prune_empty()),
            "sessions_expired": self.binder.prune_expired(),
            "rate_windows_pruned": (
                self.connect_gate.prune() + self.message_gate.prune() + self.auth_gate.prune()
            ),
        }
        if any(result.values()):
            self.log.debug(
                "Maintenance rooms_pruned=%s sessions_expired=%s rate_windows_pruned=%s",
                result["rooms_pruned"],
                result["sessions_expired"],
                result["rate_windows_pruned"],
            )
        return result

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(float(self.config.maintenance_interval_s))
            try:
                self.run_maintenance()
            except Exception:
                self.log.exception("Maintenance pass failed")

    def source_for(self, conn: HTTPConnection) -> str:
        """Rate-limit key for a request or WebSocket: the client address."""
        if self.config.trust_forwarded_for:
            forwarded = conn.headers.get("x-forwarded-for")
            if forwarded:
                first = forwarded.split(",")[0].strip()
                if first:
                    return first
        client = conn.client
        return client.host if client is not None else "unknown"

    @staticmethod
    def token_for(conn: HTTPConnection) -> str | None:
        """Session token carried by a request: query, bearer header, then cookie."""
        token = conn.query_params.get("token")
        if token:
            return token
        auth = conn.headers.get("authorization")
        if auth and auth.lower().startswith("bearer "):
            return auth[7:].strip() or None
        return conn.cookies.get(SESSION_COOKIE)

    async def handle_websocket(self, websocket: WebSocket) -> None:
        handler = ConnectionHandler(
            self,
            websocket,
            source=self.source_for(websocket),
            token=self.token_for(websocket),
        )
        await handler.run()

    def health(self) -> dict[str, Any]:
        store_ok = self.message_log.healthy
        return {
            "status": "ok" if store_ok else "degraded",
            "store_healthy": store_ok,
            "connections": len(self.registry.all_connections()),
        }
