"""Polling scheduler: drives the repeating fetch cycle of one driver.

Each cycle:
1. Ask ``SessionManager`` for a valid session (may sign in or refresh)
2. Run ``FetchPipeline`` from the current cursor up to ``now``
3. On success: reset failures, advance the cursor, emit, wait the nominal interval
4. On failure: back off and retry, or emit a terminal failure and resume
   at the nominal interval once retries are exhausted
5. On an authentication failure: emit a terminal failure immediately and
   try again at the nominal interval

Exactly one cycle is in flight per scheduler.  Several schedulers (one per
source account) can run side by side on the same event loop; they share no
mutable state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from src.connect.backoff import BackoffPolicy
from src.connect.base import (
    AttemptState,
    CycleResult,
    DriverConfig,
    PollCursor,
    RecoverableFailure,
    Sink,
    Success,
    TerminalFailure,
    describe,
)
from src.connect.errors import AuthenticationError, SessionRejectedError
from src.connect.pipeline import FetchPipeline
from src.connect.session import SessionManager

logger = logging.getLogger("connect.scheduler")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PollingHandle:
    """Handle for a running scheduler loop, returned by ``start()``.

    Attributes:
        name:    Driver name used in log messages.
        task:    The asyncio task running the loop.
        stopped: Set by ``PollingScheduler.stop``; no further cycles start.
    """

    name: str
    task: asyncio.Task | None = None
    stopped: bool = False
    _wakeup: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def wait(self) -> None:
        """Wait until the loop has exited."""
        if self.task is not None:
            await self.task


class PollingScheduler:
    """Schedule and execute polling cycles for one source session.

    Usage::

        scheduler = PollingScheduler(
            sessions=SessionManager(authenticator, refresh_delay_ms=..., expire_delay_ms=...),
            pipeline=FetchPipeline(source, transformer, timezone_offset_ms=0),
            sink=LoggingSink(),
            config=driver_config,
        )
        handle = scheduler.start()
        ...
        scheduler.stop(handle)
        await handle.wait()
    """

    def __init__(
        self,
        sessions: SessionManager,
        pipeline: FetchPipeline,
        sink: Sink,
        config: DriverConfig,
        *,
        name: str = "connect",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            sessions: Session owner for this driver.
            pipeline: Fetch/align/transform path for this driver.
            sink:     Receives every cycle result.
            config:   Timings; ``expected_data_interval_ms`` and ``backoff`` are used here.
            name:     Driver name used in log messages.
            clock:    Returns the current UTC time (injectable for tests).
        """
        self._sessions = sessions
        self._pipeline = pipeline
        self._sink = sink
        self._config = config
        self._backoff = BackoffPolicy(config.backoff)
        self._name = name
        self._clock = clock
        self._cursor = PollCursor()
        self._attempts = AttemptState()
        self._handle: PollingHandle | None = None

    @property
    def cursor(self) -> PollCursor:
        return self._cursor

    @property
    def attempts(self) -> AttemptState:
        return self._attempts

    @property
    def nominal_interval_ms(self) -> int:
        return self._config.expected_data_interval_ms

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def start(self) -> PollingHandle:
        """Begin the repeating cycle on the running event loop.

        Raises:
            RuntimeError: If this scheduler is already running.
        """
        if self._handle is not None and self._handle.running:
            raise RuntimeError(f"Scheduler '{self._name}' is already running")
        handle = PollingHandle(name=self._name)
        handle.task = asyncio.get_running_loop().create_task(
            self._loop(handle), name=f"connect-{self._name}"
        )
        self._handle = handle
        logger.info("[%s] polling started", self._name)
        return handle

    def stop(self, handle: PollingHandle) -> None:
        """Cancel future cycles.

        A cycle already in flight runs to completion, but its result is
        discarded.  A loop waiting for its next cycle exits immediately.
        """
        if handle.stopped:
            return
        handle.stopped = True
        handle._wakeup.set()
        logger.info("[%s] polling stopped", handle.name)

    async def _loop(self, handle: PollingHandle) -> None:
        while not handle.stopped:
            try:
                delay_ms = await self.run_cycle(handle)
            except Exception:
                logger.exception("[%s] unexpected error in polling loop", self._name)
                delay_ms = self.nominal_interval_ms
            if handle.stopped:
                break
            logger.debug("[%s] next cycle in %.1fs", self._name, delay_ms / 1000)
            try:
                await asyncio.wait_for(handle._wakeup.wait(), timeout=delay_ms / 1000)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, handle: PollingHandle | None = None) -> int:
        """Execute one cycle and return the delay in ms before the next one.

        Never raises for source failures: every outcome is turned into a
        ``CycleResult`` for the sink and a delay for the loop.

        Args:
            handle: The loop handle; if it was stopped while the cycle was in
                    flight, the outcome is discarded.

        Returns:
            Delay in milliseconds until the next cycle should start.
        """
        now = self._clock()
        try:
            session = await self._sessions.ensure_session(now)
            success = await self._pipeline.run(session, self._cursor, now)
        except AuthenticationError as exc:
            if self._discarded(handle):
                return self.nominal_interval_ms
            logger.error("[%s] authentication failed: %s", self._name, exc)
            self._attempts.reset()
            self._emit(TerminalFailure(reason=f"authentication failed: {exc}"))
            return self.nominal_interval_ms
        except Exception as exc:
            if isinstance(exc, SessionRejectedError):
                self._sessions.invalidate()
            if self._discarded(handle):
                return self.nominal_interval_ms
            return self._on_failure(exc)

        if self._discarded(handle):
            return self.nominal_interval_ms

        self._attempts.reset()
        self._cursor.advance(success.latest)
        self._emit(success)
        return self.nominal_interval_ms

    def _on_failure(self, exc: Exception) -> int:
        reason = f"{type(exc).__name__}: {exc}"
        failures = self._attempts.record_failure()
        if self._backoff.should_retry(failures):
            delay_ms = self._backoff.delay_for(failures)
            logger.warning(
                "[%s] cycle failed (attempt %d, retrying in %.1fs): %s",
                self._name, failures, delay_ms / 1000, reason,
            )
            self._emit(RecoverableFailure(reason=reason, attempt=failures))
            return delay_ms

        logger.error(
            "[%s] giving up after %d failed attempts: %s", self._name, failures, reason
        )
        self._attempts.reset()
        self._emit(TerminalFailure(reason=reason))
        return self.nominal_interval_ms

    def _discarded(self, handle: PollingHandle | None) -> bool:
        if handle is not None and handle.stopped:
            logger.info("[%s] discarding result of cycle finished after stop", self._name)
            return True
        return False

    def _emit(self, result: CycleResult) -> None:
        logger.debug("[%s] emitting %s", self._name, describe(result))
        try:
            self._sink.emit(result)
        except Exception:
            logger.exception("[%s] sink failed to accept %s", self._name, type(result).__name__)
