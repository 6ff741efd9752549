from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class RateWindow:
    """Fixed-window counter for one source key."""

    window_start: float
    count: int


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after_ms: int = 0


class RateGate:
    """
    Per-key fixed-window admission control.

    At most ``limit`` admissions are granted per key within ``window_s``
    seconds, counted from the first admission of the window. Rejected requests
    do not consume budget. A ``limit`` of 0 or less disables the gate.

    Safe to call from any thread.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self.name = name
        self.limit = int(limit)
        self.window_s = float(window_s)
        self._clock = clock
        self._max_keys = max(1, int(max_keys))
        self._lock = threading.Lock()
        self._windows: dict[str, RateWindow] = {}
        self._allowed = 0
        self._rejected = 0
        self.log = logging.getLogger(f"corujao.ratelimit.{name}")

    def admit(self, key: str) -> Admission:
        if self.limit <= 0:
            return Admission(True)

        now = self._clock()
        with self._lock:
            win = self._windows.get(key)
            if win is None or (now - win.window_start) >= self.window_s:
                if win is None and len(self._windows) >= self._max_keys:
                    self._evict_locked(now)
                self._windows[key] = RateWindow(window_start=now, count=1)
                self._allowed += 1
                return Admission(True)

            if win.count < self.limit:
                win.count += 1
                self._allowed += 1
                return Admission(True)

            self._rejected += 1
            remaining = (win.window_start + self.window_s) - now
            retry_after_ms = max(1, int(math.ceil(remaining * 1000)))

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Rejected key=%s retry_after_ms=%s", key, retry_after_ms)
        return Admission(False, retry_after_ms)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def prune(self) -> int:
        """Drop windows that have expired. Returns the number removed."""
        now = self._clock()
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if (now - w.window_start) >= self.window_s]
        for k in expired:
            self._windows.pop(k, None)
        return len(expired)

    def _evict_locked(self, now: float) -> None:
        if self._prune_locked(now):
            return
        # Table is full of live windows; drop the oldest one.
        oldest = min(self._windows.items(), key=lambda kv: kv[1].window_start)[0]
        self._windows.pop(oldest, None)
        self.log.warning("Rate gate %s key table full; evicted oldest window", self.name)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "tracked": len(self._windows),
                "allowed": self._allowed,
                "rejected": self._rejected,
            }
