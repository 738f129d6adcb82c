"""Sinks that receive cycle results from a ``PollingScheduler``.

``emit`` is called from the scheduler's loop and must return promptly;
any buffering or backpressure policy belongs to the sink.
"""

from __future__ import annotations

import asyncio
import logging

from src.connect.base import CycleResult, Sink, Success, TerminalFailure, describe

logger = logging.getLogger("connect.sinks")


class LoggingSink(Sink):
    """Write every cycle result to the log and keep simple counters."""

    def __init__(self, name: str = "connect") -> None:
        self._name = name
        self.successes = 0
        self.failures = 0

    def emit(self, result: CycleResult) -> None:
        if isinstance(result, Success):
            self.successes += 1
            logger.info("[%s] %s", self._name, describe(result))
        elif isinstance(result, TerminalFailure):
            self.failures += 1
            logger.error("[%s] %s", self._name, describe(result))
        else:
            logger.warning("[%s] %s", self._name, describe(result))


class QueueSink(Sink):
    """Buffer results in a bounded ``asyncio.Queue`` for a consumer task.

    When the queue is full the oldest buffered result is dropped to make
    room, so the scheduler is never blocked by a slow consumer.

    Usage::

        sink = QueueSink(maxsize=100)
        ...
        result = await sink.get()
    """

    def __init__(self, maxsize: int = 100, *, successes_only: bool = False) -> None:
        """Initialize the sink.

        Args:
            maxsize:        Queue capacity (must be positive).
            successes_only: Ignore failure results (e.g. for uploaders).
        """
        if maxsize <= 0:
            raise ValueError("QueueSink requires a positive maxsize")
        self._queue: asyncio.Queue[CycleResult] = asyncio.Queue(maxsize=maxsize)
        self._successes_only = successes_only
        self.dropped = 0

    def emit(self, result: CycleResult) -> None:
        if self._successes_only and not isinstance(result, Success):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("QueueSink full; dropped oldest result (%d dropped so far)", self.dropped)
        self._queue.put_nowait(result)

    async def get(self) -> CycleResult:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued result has been processed."""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()
