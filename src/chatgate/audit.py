"""Fire-and-forget audit dispatch.

Events go through a bounded queue drained by a single worker task, so a slow
or failing sink never stalls the conversation path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .collaborators import AuditEvent, AuditSink
from .errors import PersistenceError

logger = logging.getLogger(__name__)


class AuditDispatcher:
    """Queues audit events for a sink; ``submit`` never blocks or raises."""

    def __init__(self, sink: AuditSink, maxsize: int = 1000) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task[None] | None = None
        self.dropped = 0
        self.failed = 0

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="chatgate-audit-worker"
        )

    def submit(self, event: AuditEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Audit queue full; dropped %s event for user %s", event.action, event.user_id)

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the sink."""
        if self._worker is None or self._worker.done():
            # No worker running: deliver inline.
            while not self._queue.empty():
                await self._deliver(self._queue.get_nowait())
                self._queue.task_done()
            return
        await self._queue.join()

    async def stop(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: AuditEvent) -> None:
        try:
            await self._sink.record(event)
        except Exception as exc:  # noqa: BLE001
            self.failed += 1
            err = PersistenceError(f"audit write failed for {event.action}: {exc}")
            logger.error("%s", err)
