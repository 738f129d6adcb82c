"""One polling cycle's data path: fetch -> align -> transform.

The pipeline has no side effects beyond its return value.  Advancing the
cursor is left to ``PollingScheduler``, and only after ``run`` succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from src.connect.base import (
    DataSource,
    PollCursor,
    RawBatch,
    Session,
    Success,
    Transformer,
)
from src.connect.errors import ConnectError, FetchError, SessionRejectedError, TransformError

logger = logging.getLogger("connect.pipeline")

#: (raw batch, timezone offset in ms) -> aligned raw batch
AlignStep = Callable[[RawBatch, int], RawBatch]


def passthrough_align(batch: RawBatch, timezone_offset_ms: int) -> RawBatch:
    """Default alignment: records are already on a common timeline."""
    return batch


class FetchPipeline:
    """Fetch every data kind, align the joined batch, transform it."""

    def __init__(
        self,
        source: DataSource,
        transformer: Transformer,
        *,
        timezone_offset_ms: int,
        align: AlignStep = passthrough_align,
    ) -> None:
        self._source = source
        self._transformer = transformer
        self._timezone_offset_ms = timezone_offset_ms
        self._align = align

    async def run(self, session: Session, cursor: PollCursor, now: datetime) -> Success:
        """Run one fetch -> align -> transform pass.

        All kinds are requested concurrently.  A partial result is never
        accepted: if any request fails the whole run fails, so the cursor
        cannot move past a kind that was not fetched.

        Args:
            session: Valid session from ``SessionManager``.
            cursor:  Current watermark; bounds each request from below.
            now:     Upper bound of the fetch window.

        Returns:
            ``Success`` with the transformed records and latest raw timestamps.

        Raises:
            SessionRejectedError: The source rejected the session.
            FetchError:           Any sub-request failed.
            TransformError:       The aligned batch could not be transformed.
        """
        kinds = self._source.kinds
        results = await asyncio.gather(
            *(self._source.fetch(kind, session, cursor.since(kind), now) for kind in kinds),
            return_exceptions=True,
        )

        batch = RawBatch()
        errors: list[tuple[str, BaseException]] = []
        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                errors.append((kind, result))
            else:
                batch.records[kind] = list(result)

        if errors:
            raise self._fetch_failure(errors)

        logger.debug(
            "Fetched %d raw records (%s)",
            len(batch),
            ", ".join(f"{k}={len(v)}" for k, v in batch.records.items()),
        )

        aligned = self._align(batch, self._timezone_offset_ms)
        try:
            records = self._transformer.transform(aligned, self._timezone_offset_ms)
        except TransformError:
            raise
        except Exception as exc:
            raise TransformError(f"transform failed: {exc}") from exc

        return Success(records=records, latest=batch.latest())

    @staticmethod
    def _fetch_failure(errors: list[tuple[str, BaseException]]) -> FetchError:
        for _, exc in errors:
            # CancelledError and friends are not fetch failures.
            if not isinstance(exc, Exception):
                raise exc
        for _, exc in errors:
            if isinstance(exc, SessionRejectedError):
                return exc
        for kind, exc in errors:
            if not isinstance(exc, ConnectError):
                logger.debug("Unexpected %s while fetching %s", type(exc).__name__, kind)
        summary = "; ".join(f"{kind}: {exc}" for kind, exc in errors)
        error = FetchError(f"fetch failed for {summary}")
        error.__cause__ = errors[0][1]
        return error
