"""Glooko collaborators for the polling driver.

Glooko has no session refresh endpoint, so ``GlookoAuthenticator`` keeps the
default ``refresh`` (which raises ``RefreshError``) and ``SessionManager``
signs in again when the session goes stale.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.connect.base import (
    Authenticator,
    DataSource,
    RawRecord,
    Session,
    SessionToken,
    parse_timestamp,
)
from src.connect.errors import FetchError
from src.connect.sources.glooko.api import (
    CGM_READINGS_PATH,
    NORMAL_BOLUSES_PATH,
    SCHEDULED_BASALS_PATH,
    GlookoClient,
)

logger = logging.getLogger("connect.sources.glooko")

READINGS = "readings"
NORMAL_BOLUSES = "normalBoluses"
SCHEDULED_BASALS = "scheduledBasals"

# kind -> endpoint; the response wraps the records under the kind's name.
_ENDPOINTS: dict[str, str] = {
    READINGS: CGM_READINGS_PATH,
    NORMAL_BOLUSES: NORMAL_BOLUSES_PATH,
    SCHEDULED_BASALS: SCHEDULED_BASALS_PATH,
}


def record_timestamp(payload: dict) -> datetime | None:
    """Return the device-clock timestamp of a Glooko record, as printed.

    CGM readings carry ``timestamp``; pump events carry ``pumpTimestamp``.
    """
    return parse_timestamp(payload.get("timestamp") or payload.get("pumpTimestamp"))


class GlookoAuthenticator(Authenticator):
    """Sign in to Glooko with an account email and password."""

    def __init__(self, client: GlookoClient, email: str, password: str) -> None:
        self._client = client
        self._email = email
        self._password = password

    async def authenticate(self) -> SessionToken:
        return await self._client.sign_in(self._email, self._password)


class GlookoDataSource(DataSource):
    """Fetch scheduled basals, normal boluses and CGM readings.

    Glooko reports device wall-clock time with a ``Z`` suffix.  The source
    adds ``timezone_offset_ms`` so every ``RawRecord.timestamp`` is a true
    UTC instant, on the same clock as ``since`` and ``until``.
    """

    kinds = (SCHEDULED_BASALS, NORMAL_BOLUSES, READINGS)

    def __init__(self, client: GlookoClient, timezone_offset_ms: int = 0) -> None:
        self._client = client
        self._shift = timedelta(milliseconds=timezone_offset_ms)

    async def fetch(
        self,
        kind: str,
        session: Session,
        since: datetime | None,
        until: datetime,
    ) -> list[RawRecord]:
        """Fetch ``kind`` records newer than ``since``.

        Records without a parseable timestamp, or at/before ``since``, are
        dropped so that the cursor only moves over data actually delivered.
        """
        try:
            path = _ENDPOINTS[kind]
        except KeyError:
            raise FetchError(f"Unknown Glooko data kind '{kind}'") from None

        data = await self._client.fetch(path, session.token, session.account_id, since, until)
        items = data.get(kind)
        if items is None:
            items = []
        if not isinstance(items, list):
            raise FetchError(f"Glooko '{kind}' payload is {type(items).__name__}, expected a list")

        records: list[RawRecord] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            device_ts = record_timestamp(item)
            if device_ts is None:
                logger.debug("Glooko: skipping %s record without timestamp", kind)
                continue
            ts = device_ts + self._shift
            if since is not None and ts <= since:
                continue
            records.append(RawRecord(kind=kind, timestamp=ts, payload=item))

        logger.debug("Glooko: %d new %s records", len(records), kind)
        return records
