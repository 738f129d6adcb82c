"""Nightscout REST uploader fed by a ``QueueSink``.

Successful cycle results are drained from the queue by a background task
and posted to a Nightscout site:

    /api/v1/entries.json     — CGM readings (``Entry``)
    /api/v1/treatments.json  — insulin delivery (``Treatment``)

Nightscout authenticates API writes with the SHA-1 hex digest of the site's
``API_SECRET`` sent in the ``api-secret`` header.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Sequence

import httpx
from pydantic import BaseModel

from src.connect.base import Success
from src.connect.sinks import QueueSink

logger = logging.getLogger("connect.outputs.nightscout")

_ENTRIES_PATH = "/api/v1/entries.json"
_TREATMENTS_PATH = "/api/v1/treatments.json"


def hash_api_secret(api_secret: str) -> str:
    """Return the SHA-1 hex digest Nightscout expects in ``api-secret``."""
    return hashlib.sha1(api_secret.encode("utf-8")).hexdigest()


class NightscoutUploader:
    """Drain a ``QueueSink`` and upload each successful batch.

    Usage::

        sink = QueueSink(successes_only=True)
        uploader = NightscoutUploader(http_client, "https://my.site", secret, sink)
        task = uploader.start()
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        api_secret: str,
        queue: QueueSink,
        *,
        retry_delay: float = 30.0,
    ) -> None:
        """Initialize the uploader.

        Args:
            http_client: Client used for every POST (owned by the caller).
            base_url:    Nightscout site URL, e.g. ``https://my.nightscout.site``.
            api_secret:  Plain-text API_SECRET of the site.
            queue:       Sink the scheduler emits into.
            retry_delay: Seconds to wait before the single retry of a failed POST.
        """
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "api-secret": hash_api_secret(api_secret),
            "Accept": "application/json",
        }
        self._queue = queue
        self._retry_delay = retry_delay
        self.uploaded = 0
        self.failed = 0

    def start(self) -> asyncio.Task:
        """Start the drain loop as a task on the running event loop."""
        return asyncio.get_running_loop().create_task(self.run(), name="nightscout-uploader")

    async def run(self) -> None:
        """Drain the queue forever; upload errors are logged, never raised."""
        while True:
            result = await self._queue.get()
            try:
                if isinstance(result, Success):
                    await self.upload(result)
            except (httpx.HTTPError, ValueError) as exc:
                self.failed += 1
                logger.warning("Nightscout upload failed: %s", exc)
            except Exception:
                self.failed += 1
                logger.exception("Unexpected error while uploading to Nightscout")
            finally:
                self._queue.task_done()

    async def upload(self, result: Success) -> None:
        """Post the entries and treatments of one cycle.

        Each list is posted separately and retried once after
        ``retry_delay`` on a transient failure, so a failed treatments POST
        never re-sends entries that were already accepted.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses (after the retry for 5xx).
            httpx.TransportError:  On network failures (after the retry).
        """
        await self._post_with_retry(_ENTRIES_PATH, result.records.entries)
        await self._post_with_retry(_TREATMENTS_PATH, result.records.treatments)
        self.uploaded += 1

    async def _post_with_retry(self, path: str, records: Sequence[BaseModel]) -> None:
        try:
            await self._post(path, records)
        except httpx.HTTPError as exc:
            if not _is_transient(exc):
                raise
            logger.warning(
                "Nightscout POST %s failed (%s); retrying in %.1fs", path, exc, self._retry_delay
            )
            await asyncio.sleep(self._retry_delay)
            await self._post(path, records)

    async def _post(self, path: str, records: Sequence[BaseModel]) -> None:
        if not records:
            return
        body = [r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in records]
        response = await self._http.post(
            f"{self._base_url}{path}", json=body, headers=self._headers
        )
        response.raise_for_status()
        logger.info("Uploaded %d records to %s", len(body), path)


def _is_transient(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)
