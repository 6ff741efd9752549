"""Statistics tracking and reporting for the Corujão relay."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import ChatService


class StatsManager:
    """
    Lifetime counters for the relay, reported by ``/stats``.

    Tracks counters for:
    - Connections accepted / rejected
    - Frames in, bad frames, bytes in/out
    - Joins and leaves
    - Messages relayed and persisted
    - Rate limiting events
    - Pings sent, heartbeat timeouts
    """

    def __init__(self, service: ChatService) -> None:
        self.service = service
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "connections": 0,
            "connections_rejected": 0,
            "auth_failures": 0,
            "frames_in": 0,
            "frames_bad": 0,
            "bytes_in": 0,
            "bytes_out": 0,
            "joins": 0,
            "leaves": 0,
            "msgs_relayed": 0,
            "msgs_not_durable": 0,
            "commands": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "pings_out": 0,
            "heartbeat_timeouts": 0,
            "slow_consumers": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        svc = self.service
        cfg = svc.config
        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        room_stats = svc.registry.get_stats()
        session_stats = svc.binder.get_stats()
        mod_stats = svc.moderation.get_stats()
        log_stats = svc.message_log.get_stats()
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"corujao {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={room_stats['connections']} "
            f"sessions={session_stats['sessions']} "
            f"users_logged_in={session_stats['users']}"
        )
        lines.append(f"rooms={room_stats['rooms_total']} memberships={room_stats['memberships']}")

        top_rooms = room_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"moderation: banned={mod_stats['banned_count']} muted={mod_stats['muted_count']}"
        )
        lines.append(
            f"limits: connect={cfg.connect_rate_limit}/{cfg.connect_rate_window_s:g}s "
            f"message={cfg.message_rate_limit}/{cfg.message_rate_window_s:g}s "
            f"auth={cfg.auth_rate_limit}/{cfg.auth_rate_window_s:g}s "
            f"max_message_chars={cfg.max_message_chars}"
        )
        lines.append(
            "store: healthy={} queued={} written={} failed={} refused={}".format(
                log_stats["healthy"],
                log_stats["queued"],
                log_stats["written"],
                log_stats["failed"],
                log_stats["refused"],
            )
        )
        lines.append(
            "io: frames_in={} frames_bad={} bytes_in={} bytes_out={}".format(
                c.get("frames_in", 0),
                c.get("frames_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: joins={} leaves={} msgs_relayed={} not_durable={} commands={} "
            "errors_sent={} rate_limited={}".format(
                c.get("joins", 0),
                c.get("leaves", 0),
                c.get("msgs_relayed", 0),
                c.get("msgs_not_durable", 0),
                c.get("commands", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "conns: accepted={} rejected={} auth_failures={} pings_out={} "
            "heartbeat_timeouts={} slow_consumers={}".format(
                c.get("connections", 0),
                c.get("connections_rejected", 0),
                c.get("auth_failures", 0),
                c.get("pings_out", 0),
                c.get("heartbeat_timeouts", 0),
                c.get("slow_consumers", 0),
            )
        )

        return "\n".join(lines)
