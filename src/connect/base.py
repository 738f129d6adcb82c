"""Core data model and collaborator interfaces for the polling driver.

The driver itself (``SessionManager``, ``FetchPipeline``, ``PollingScheduler``)
only talks to sources through the abstract collaborators defined here:

    Authenticator  — produces session credentials
    DataSource     — retrieves raw records for one data kind
    Transformer    — turns an aligned raw batch into output records
    Sink           — receives every cycle result

Every source module (e.g. ``connect.sources.glooko``) implements the first
three; sinks live in ``connect.sinks`` and ``connect.outputs``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from src.connect.errors import RefreshError
from src.connect.models import Entry, Treatment

logger = logging.getLogger("connect")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionToken:
    """Credential material returned by an Authenticator.

    Attributes:
        token:      Opaque credential (e.g. a session cookie string).
        account_id: Source-specific account identifier (e.g. a patient code).
    """

    token: str
    account_id: str


@dataclass(frozen=True)
class Session:
    """An authenticated session with its lifecycle timestamps.

    Owned by ``SessionManager`` and replaced wholesale on refresh.

    Attributes:
        token:         Opaque credential used on every data request.
        account_id:    Source-specific account identifier.
        created_at:    When this session object was issued.
        refresh_after: From this instant the session should be refreshed.
        expire_at:     From this instant the session must not be used.
    """

    token: str
    account_id: str
    created_at: datetime
    refresh_after: datetime
    expire_at: datetime

    def __post_init__(self) -> None:
        if not (self.created_at <= self.refresh_after < self.expire_at):
            raise ValueError(
                "Session timestamps must satisfy created_at <= refresh_after < expire_at, "
                f"got {self.created_at} / {self.refresh_after} / {self.expire_at}"
            )

    def is_stale(self, now: datetime) -> bool:
        return now >= self.refresh_after

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expire_at


# ---------------------------------------------------------------------------
# Configuration consumed by the core
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackoffSpec:
    """Retry policy parameters.

    Attributes:
        base_interval_ms: Delay before the first retry.
        max_attempts:     Retries allowed before a cycle fails terminally.
    """

    base_interval_ms: int
    max_attempts: int


@dataclass(frozen=True)
class DriverConfig:
    """Timing and alignment settings for one driver instance.

    All fields are required; defaults belong to configuration loading
    (see ``connect.config_loader``), not to the core.
    """

    refresh_delay_ms: int
    expire_delay_ms: int
    expected_data_interval_ms: int
    backoff: BackoffSpec
    timezone_offset_ms: int


# ---------------------------------------------------------------------------
# Raw and transformed data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawRecord:
    """One un-normalized record as returned by a DataSource.

    Attributes:
        kind:      Data kind the record was fetched for (e.g. 'readings').
        timestamp: UTC instant of the data point, used to advance the cursor.
        payload:   Exact JSON object from the source API.
    """

    kind: str
    timestamp: datetime
    payload: dict


@dataclass
class RawBatch:
    """Raw records of one cycle, grouped by kind."""

    records: dict[str, list[RawRecord]] = field(default_factory=dict)

    def latest(self) -> dict[str, datetime]:
        """Return the latest timestamp per kind (kinds without records are omitted)."""
        return {
            kind: max(r.timestamp for r in records)
            for kind, records in self.records.items()
            if records
        }

    def __len__(self) -> int:
        return sum(len(r) for r in self.records.values())


@dataclass
class TransformedBatch:
    """Normalized output records of one cycle."""

    entries: list[Entry] = field(default_factory=list)
    treatments: list[Treatment] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Cross-cycle state
# ---------------------------------------------------------------------------


@dataclass
class PollCursor:
    """Watermark of the last successfully retrieved data point per kind."""

    positions: dict[str, datetime] = field(default_factory=dict)

    def since(self, kind: str) -> datetime | None:
        return self.positions.get(kind)

    def advance(self, latest: dict[str, datetime]) -> None:
        """Move each kind forward to ``latest[kind]``; never moves backwards."""
        for kind, ts in latest.items():
            current = self.positions.get(kind)
            if current is None or ts > current:
                self.positions[kind] = ts


@dataclass
class AttemptState:
    """Consecutive failure counter read by the backoff policy."""

    consecutive_failures: int = 0

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    def reset(self) -> None:
        self.consecutive_failures = 0


# ---------------------------------------------------------------------------
# Cycle results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    """A cycle that fetched, aligned and transformed data.

    Attributes:
        records: The transformed output records.
        latest:  Latest raw timestamp per kind, used to advance the cursor.
    """

    records: TransformedBatch
    latest: dict[str, datetime] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoverableFailure:
    """A failed attempt that will be retried after a backoff delay."""

    reason: str
    attempt: int


@dataclass(frozen=True)
class TerminalFailure:
    """A cycle that gave up: retries exhausted or authentication failed."""

    reason: str


CycleResult = Union[Success, RecoverableFailure, TerminalFailure]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class Authenticator(ABC):
    """Produces session credentials for one source account.

    Credentials are supplied to the implementation at construction.
    """

    @abstractmethod
    async def authenticate(self) -> SessionToken:
        """Sign in and return fresh credentials.

        Raises:
            AuthenticationError: Invalid credentials or source-side rejection.
            FetchError:          Transport failure while signing in.
        """

    async def refresh(self, session: Session) -> SessionToken:
        """Renew an existing session in place.

        Sources without a refresh endpoint keep this default, which makes
        ``SessionManager`` fall back to ``authenticate()``.

        Raises:
            RefreshError: Refresh failed or is not supported.
        """
        raise RefreshError(f"{type(self).__name__} does not support session refresh")


class DataSource(ABC):
    """Retrieves raw records from the external source."""

    #: Data kinds fetched every cycle, one request per kind.
    kinds: tuple[str, ...] = ()

    @abstractmethod
    async def fetch(
        self,
        kind: str,
        session: Session,
        since: datetime | None,
        until: datetime,
    ) -> list[RawRecord]:
        """Fetch records of ``kind`` newer than ``since`` and up to ``until``.

        Args:
            kind:    One of ``self.kinds``.
            session: A valid session from ``SessionManager``.
            since:   Cursor position for this kind (None on the first cycle).
            until:   Upper bound of the fetch window (the cycle's ``now``).

        Raises:
            FetchError:           Network error, non-2xx response, bad payload.
            SessionRejectedError: The source no longer accepts the session.
        """


class Transformer(ABC):
    """Turns an aligned raw batch into normalized output records."""

    @abstractmethod
    def transform(self, batch: RawBatch, timezone_offset_ms: int) -> TransformedBatch:
        """Pure conversion; no I/O.

        Raises:
            TransformError: The batch could not be converted.
        """


class Sink(ABC):
    """Receives the result of every polling cycle."""

    @abstractmethod
    def emit(self, result: CycleResult) -> None:
        """Hand over a result without blocking the scheduler."""


def describe(result: CycleResult) -> str:
    """One-line summary of a cycle result for log messages."""
    if isinstance(result, Success):
        return (
            f"success ({len(result.records.entries)} entries, "
            f"{len(result.records.treatments)} treatments)"
        )
    if isinstance(result, RecoverableFailure):
        return f"recoverable failure #{result.attempt}: {result.reason}"
    return f"terminal failure: {result.reason}"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string into a timezone-aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is
    missing or unparseable.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse timestamp: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
