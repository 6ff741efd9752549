from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .errors import PersistenceError
from .models import Message
from .store import DocumentStore, call_store

ResultCallback = Callable[[Message, Exception | None], None]


class MessageLog:
    """
    Durable, append-only chat log with history replay.

    Writes are decoupled from broadcast: :meth:`submit` enqueues onto a bounded
    queue drained by a single writer task, so durable order matches
    submission order and the caller never waits on the store.

    After ``failure_threshold`` consecutive store failures the log is marked
    unhealthy and refuses writes for ``recovery_s`` seconds; the first write
    after that is let through as a trial.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        timeout_s: float = 5.0,
        queue_size: int = 1000,
        failure_threshold: int = 5,
        recovery_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.timeout_s = float(timeout_s)
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_s = float(recovery_s)
        self._clock = clock
        self._queue: asyncio.Queue[tuple[Message, ResultCallback | None]] = asyncio.Queue(
            maxsize=max(1, int(queue_size))
        )
        self._worker: asyncio.Task | None = None
        self._consecutive_failures = 0
        self._unhealthy_since: float | None = None
        self._written = 0
        self._failed = 0
        self._refused = 0
        self.log = logging.getLogger("corujao.messagelog")

    @property
    def healthy(self) -> bool:
        if self._unhealthy_since is None:
            return True
        return (self._clock() - self._unhealthy_since) >= self.recovery_s

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="message_log_writer")

    async def stop(self, *, drain_timeout_s: float = 5.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
        except asyncio.TimeoutError:
            self.log.warning("Message log stopped with %d unwritten message(s)", self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def submit(self, message: Message, on_result: ResultCallback | None = None) -> bool:
        """Queue ``message`` for durable write without waiting.

        Returns False when the write is refused (store unhealthy or queue
        full); the message is then not durable.
        """
        if not self.healthy:
            self._refused += 1
            return False
        try:
            self._queue.put_nowait((message, on_result))
        except asyncio.QueueFull:
            self._refused += 1
            self.log.warning("Message log queue full; refusing write id=%s", message.id)
            return False
        return True

    async def append(self, message: Message) -> None:
        """Write ``message`` now. Raises PersistenceError."""
        if not self.healthy:
            self._refused += 1
            raise PersistenceError("message store is unavailable")
        try:
            await call_store(self.store.append_message, message, timeout_s=self.timeout_s)
        except PersistenceError:
            self._record_failure()
            raise
        self._record_success()

    async def history(self, room: str, limit: int) -> list[Message]:
        return await call_store(self.store.query_messages, room, int(limit), timeout_s=self.timeout_s)

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            message, on_result = await self._queue.get()
            error: Exception | None = None
            try:
                await self.append(message)
            except PersistenceError as e:
                error = e
                self.log.warning("Message not persisted id=%s room=%s err=%s", message.id, message.room, e)
            except Exception as e:
                error = e
                self.log.exception("Unexpected error persisting message id=%s", message.id)
            finally:
                self._queue.task_done()

            if on_result is not None:
                try:
                    on_result(message, error)
                except Exception:
                    self.log.debug("Message log result callback failed", exc_info=True)

    def _record_success(self) -> None:
        self._written += 1
        self._consecutive_failures = 0
        if self._unhealthy_since is not None:
            self.log.info("Message store recovered")
            self._unhealthy_since = None

    def _record_failure(self) -> None:
        self._failed += 1
        self._consecutive_failures += 1
        if self._unhealthy_since is not None:
            # Failed trial write: stay unhealthy for another recovery period.
            self._unhealthy_since = self._clock()
        elif self._consecutive_failures >= self.failure_threshold:
            self._unhealthy_since = self._clock()
            self.log.error(
                "Message store marked unhealthy after %d consecutive failures",
                self._consecutive_failures,
            )

    def get_stats(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "queued": self._queue.qsize(),
            "written": self._written,
            "failed": self._failed,
            "refused": self._refused,
        }
