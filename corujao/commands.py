"""Slash-command handling for chat connections."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .constants import CLOSE_POLICY_VIOLATION, SYS_ANNOUNCEMENT, SYS_NOTICE
from .errors import AuthError, ChatError, ValidationError
from .events import (
    AuthErrorEvent,
    ClearScreen,
    ErrorNotice,
    PreviousMessages,
    RoomList,
    ServerEvent,
    SystemMessage,
    UserList,
)
from .store import call_store
from .util import normalize_text, normalize_username

if TYPE_CHECKING:
    from .connection import ConnectionHandler
    from .service import ChatService

RANKING_SIZE = 20

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "  /help (/ajuda)             show this help",
        "  /room <name> (/sala)       switch to another room",
        "  /rooms (/salas)            list rooms and member counts",
        "  /who [room]                list users in a room",
        "  /history [n]               show recent messages of this room",
        "  /ranking                   show the ranking",
        "  /clear (/limpar)           clear your screen",
        "  /logout (/sair)            end your session",
    ]
)

ADMIN_HELP_TEXT = "\n".join(
    [
        "Admin commands:",
        "  /ban <user>, /unban <user>",
        "  /mute <user>, /unmute <user>",
        "  /announce <text>",
        "  /score <user> <points>",
        "  /stats",
    ]
)


@dataclass
class CommandResult:
    """Events for the sender, and whether the connection should then close."""

    events: list[ServerEvent] = field(default_factory=list)
    close: bool = False


class CommandDispatcher:
    """Parses ``/command arg ...`` text and runs the matching handler."""

    def __init__(self, service: ChatService) -> None:
        self.service = service
        self.log = logging.getLogger("corujao.commands")

    async def dispatch(self, conn: ConnectionHandler, text: str) -> CommandResult:
        """Run one command on behalf of ``conn``.

        Nothing produced here is broadcast unless the command itself is a
        broadcast (``/announce``); errors go to the sender only.
        """
        cmdline = text.strip()
        parts = [p for p in cmdline[1:].split() if p]
        if not parts:
            return self._error(conn, "unknown_command", "unrecognized command: /")

        cmd = parts[0].lower()
        args = parts[1:]

        try:
            if cmd in ("help", "ajuda"):
                return self._help(conn)
            if cmd in ("room", "sala", "join"):
                return await self._room(conn, args)
            if cmd in ("clear", "limpar"):
                return CommandResult([ClearScreen()])
            if cmd == "who":
                return self._who(conn, args)
            if cmd in ("rooms", "salas"):
                return CommandResult([RoomList(tuple(self.service.registry.list_rooms()))])
            if cmd == "history":
                return await self._history(conn, args)
            if cmd == "ranking":
                return await self._ranking(conn)
            if cmd in ("logout", "sair"):
                return self._logout(conn)

            if cmd in ("ban", "unban", "mute", "unmute", "announce", "score", "stats"):
                self._require_admin(conn)
                if cmd == "ban":
                    return await self._ban(conn, args)
                if cmd == "unban":
                    return await self._unban(conn, args)
                if cmd == "mute":
                    return self._mute(conn, args, muted=True)
                if cmd == "unmute":
                    return self._mute(conn, args, muted=False)
                if cmd == "announce":
                    return self._announce(conn, cmdline)
                if cmd == "score":
                    return await self._score(conn, args)
                return self._notice(conn, self.service.stats_manager.format_stats())
        except ChatError as e:
            return self._error(conn, e.code, e.message)

        return self._error(conn, "unknown_command", f"unrecognized command: /{cmd}")

    def _notice(self, conn: ConnectionHandler, text: str) -> CommandResult:
        return CommandResult([SystemMessage(text, conn.current_room, kind=SYS_NOTICE)])

    def _error(self, conn: ConnectionHandler, code: str, text: str) -> CommandResult:
        return CommandResult([ErrorNotice(code, text, conn.current_room)])

    def _require_admin(self, conn: ConnectionHandler) -> None:
        identity = conn.identity
        if identity is None or not identity.is_admin:
            raise AuthError("not authorized", code="forbidden")

    @staticmethod
    def _usage(text: str) -> ValidationError:
        return ValidationError(f"usage: {text}", code="usage")

    def _target_user(self, args: list[str], usage: str) -> str:
        if not args:
            raise self._usage(usage)
        name = normalize_username(args[0].lstrip("@"))
        if name is None:
            raise ValidationError(f"invalid username: {args[0]}", code="invalid_username")
        return name

    def _help(self, conn: ConnectionHandler) -> CommandResult:
        text = HELP_TEXT
        if conn.identity is not None and conn.identity.is_admin:
            text = text + "\n" + ADMIN_HELP_TEXT
        return self._notice(conn, text)

    async def _room(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        if not args:
            raise self._usage("/room <name>")
        # change_room sends its own notices.
        await conn.change_room(args[0])
        return CommandResult()

    def _who(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        registry = self.service.registry
        room = conn.current_room
        if args:
            try:
                room = registry.normalize_room(args[0])
            except ValueError as e:
                raise ValidationError(f"bad room: {e}", code="invalid_room") from e
        if room is None:
            raise self._usage("/who [room]")
        return CommandResult([UserList(room, tuple(registry.usernames_in(room)))])

    async def _history(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        cfg = self.service.config
        limit = int(cfg.history_limit)
        if args:
            try:
                limit = int(args[0])
            except ValueError:
                raise self._usage("/history [n]") from None
        limit = max(1, min(limit, int(cfg.http_history_limit)))
        room = conn.current_room
        if room is None:
            return CommandResult()
        messages = await self.service.message_log.history(room, limit)
        return CommandResult([PreviousMessages(room, tuple(messages))])

    async def _ranking(self, conn: ConnectionHandler) -> CommandResult:
        svc = self.service
        rows = await call_store(svc.store.top_ranking, RANKING_SIZE, timeout_s=svc.config.store_timeout_s)
        if not rows:
            return self._notice(conn, "ranking is empty")
        lines = ["Ranking:"]
        for pos, (nick, points) in enumerate(rows, start=1):
            lines.append(f"  {pos}. {nick} - {points} pts")
        return self._notice(conn, "\n".join(lines))

    def _logout(self, conn: ConnectionHandler) -> CommandResult:
        self.service.binder.destroy(conn.token)
        return CommandResult([SystemMessage("session ended, bye!", conn.current_room)], close=True)

    async def _ban(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        svc = self.service
        name = self._target_user(args, "/ban <user>")
        if conn.username is not None and name.lower() == conn.username.lower():
            raise ValidationError("you cannot ban yourself", code="invalid_target")

        svc.moderation.ban(name)
        sessions = svc.binder.destroy_user(name)
        targets = svc.registry.connections_for_user(name)
        for target in targets:
            target.send_event(AuthErrorEvent("banned", "you have been banned"))
            target.request_close(CLOSE_POLICY_VIOLATION, "banned")

        status = await asyncio.to_thread(svc.moderation.persist_banned_users_to_config)
        self.log.info(
            "Ban by=%s user=%s sessions=%d connections=%d", conn.username, name, sessions, len(targets)
        )
        return self._notice(conn, f"banned {name} ({len(targets)} connection(s) closed); {status}")

    async def _unban(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        svc = self.service
        name = self._target_user(args, "/unban <user>")
        if not svc.moderation.unban(name):
            return self._notice(conn, f"{name} is not banned")
        status = await asyncio.to_thread(svc.moderation.persist_banned_users_to_config)
        self.log.info("Unban by=%s user=%s", conn.username, name)
        return self._notice(conn, f"unbanned {name}; {status}")

    def _mute(self, conn: ConnectionHandler, args: list[str], *, muted: bool) -> CommandResult:
        svc = self.service
        if muted:
            name = self._target_user(args, "/mute <user>")
            changed = svc.moderation.mute(name)
            verb = "muted"
        else:
            name = self._target_user(args, "/unmute <user>")
            changed = svc.moderation.unmute(name)
            verb = "unmuted"

        if not changed:
            return self._notice(conn, f"{name} is already {verb}")

        for target in svc.registry.connections_for_user(name):
            target.send_event(SystemMessage(f"you have been {verb}", target.current_room))
        self.log.info("%s by=%s user=%s", verb.capitalize(), conn.username, name)
        return self._notice(conn, f"{verb} {name}")

    def _announce(self, conn: ConnectionHandler, cmdline: str) -> CommandResult:
        svc = self.service
        pieces = cmdline.split(None, 1)
        if len(pieces) < 2:
            raise self._usage("/announce <text>")
        try:
            text = normalize_text(pieces[1], max_chars=svc.config.max_message_chars)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        delivered = svc.registry.broadcast_all(
            SystemMessage(f"[{svc.config.server_name}] {text}", kind=SYS_ANNOUNCEMENT)
        )
        self.log.info("Announcement by=%s delivered=%d", conn.username, delivered)
        return self._notice(conn, f"announcement sent to {delivered} connection(s)")

    async def _score(self, conn: ConnectionHandler, args: list[str]) -> CommandResult:
        svc = self.service
        if len(args) < 2:
            raise self._usage("/score <user> <points>")
        name = self._target_user(args, "/score <user> <points>")
        try:
            points = int(args[1])
        except ValueError:
            raise self._usage("/score <user> <points>") from None
        await call_store(svc.store.upsert_ranking_score, name, points, timeout_s=svc.config.store_timeout_s)
        return self._notice(conn, f"score for {name} set to {points}")
