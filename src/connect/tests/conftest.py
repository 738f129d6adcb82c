"""Shared fixtures and fakes for the polling driver tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.connect.base import (
    Authenticator,
    BackoffSpec,
    CycleResult,
    DataSource,
    DriverConfig,
    RawBatch,
    RawRecord,
    Session,
    SessionToken,
    Sink,
    TransformedBatch,
    Transformer,
)
from src.connect.models import Entry

# Fixed instant all tests start from
T0 = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)

NOMINAL_MS = 300_000
REFRESH_MS = 85_800_000
EXPIRE_MS = 86_400_000


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms)
        return self.now


class FakeAuthenticator(Authenticator):
    """Authenticator with AsyncMock hooks for sign-in and refresh."""

    def __init__(self) -> None:
        self.authenticate_mock = AsyncMock(return_value=SessionToken(token="cookie-1", account_id="patient-1"))
        self.refresh_mock: AsyncMock | None = None

    async def authenticate(self) -> SessionToken:
        return await self.authenticate_mock()

    async def refresh(self, session: Session) -> SessionToken:
        if self.refresh_mock is None:
            return await super().refresh(session)
        return await self.refresh_mock(session)


class FakeDataSource(DataSource):
    """Returns queued results (record lists or exceptions) per kind."""

    kinds = ("readings", "normalBoluses")

    def __init__(self) -> None:
        self.results: dict[str, list] = {k: [] for k in self.kinds}
        self.calls: list[tuple[str, datetime | None, datetime]] = []

    def queue(self, kind: str, result) -> None:  # noqa: ANN001
        self.results[kind].append(result)

    async def fetch(self, kind, session, since, until):  # noqa: ANN001
        self.calls.append((kind, since, until))
        pending = self.results[kind]
        result = pending.pop(0) if pending else []
        if isinstance(result, BaseException):
            raise result
        return result


class CountingTransformer(Transformer):
    """Turns every 'readings' record into an Entry with sgv=100."""

    def __init__(self) -> None:
        self.batches: list[RawBatch] = []
        self.offsets: list[int] = []

    def transform(self, batch: RawBatch, timezone_offset_ms: int) -> TransformedBatch:
        self.batches.append(batch)
        self.offsets.append(timezone_offset_ms)
        out = TransformedBatch()
        for r in batch.records.get("readings", []):
            out.entries.append(
                Entry(sgv=100, date=int(r.timestamp.timestamp() * 1000), dateString=r.timestamp.isoformat(), device="test")
            )
        return out


class RecordingSink(Sink):
    """Collects every emitted result."""

    def __init__(self) -> None:
        self.results: list[CycleResult] = []

    def emit(self, result: CycleResult) -> None:
        self.results.append(result)


def reading(ts: datetime, value: int = 120) -> RawRecord:
    return RawRecord(kind="readings", timestamp=ts, payload={"timestamp": ts.isoformat(), "value": value})


def bolus(ts: datetime, insulin: float = 1.5) -> RawRecord:
    return RawRecord(kind="normalBoluses", timestamp=ts, payload={"pumpTimestamp": ts.isoformat(), "insulinDelivered": insulin})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    return FakeAuthenticator()


@pytest.fixture
def data_source() -> FakeDataSource:
    return FakeDataSource()


@pytest.fixture
def transformer() -> CountingTransformer:
    return CountingTransformer()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def driver_config() -> DriverConfig:
    """Glooko's production timings."""
    return DriverConfig(
        refresh_delay_ms=REFRESH_MS,
        expire_delay_ms=EXPIRE_MS,
        expected_data_interval_ms=NOMINAL_MS,
        backoff=BackoffSpec(base_interval_ms=150_000, max_attempts=1),
        timezone_offset_ms=0,
    )
