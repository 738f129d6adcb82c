"""Glooko REST API client.

Glooko authenticates with an email/password sign-in that returns session
cookies; data endpoints additionally need the patient's ``glookoCode``.

API base: https://api.glooko.com (``eu.api.glooko.com`` for EU accounts)

Endpoints used:
    /api/v2/users/sign_in             — Email/password sign-in (sets cookies)
    /api/v3/session/users             — Current patient (glookoCode)
    /api/v2/cgm/readings              — CGM readings
    /api/v2/pumps/normal_boluses      — Normal boluses
    /api/v2/pumps/scheduled_basals    — Scheduled basals
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone

import httpx

from src.connect.base import SessionToken
from src.connect.errors import AuthenticationError, FetchError, SessionRejectedError

logger = logging.getLogger("connect.sources.glooko.api")

DEFAULT_SERVER = "api.glooko.com"
USER_AGENT = "Mozilla/5.0 (compatible; cgm-connect; +https://github.com/nightscout/nightscout-connect)"

SIGN_IN_PATH = "/api/v2/users/sign_in"
SESSION_USERS_PATH = "/api/v3/session/users"
CGM_READINGS_PATH = "/api/v2/cgm/readings"
NORMAL_BOLUSES_PATH = "/api/v2/pumps/normal_boluses"
SCHEDULED_BASALS_PATH = "/api/v2/pumps/scheduled_basals"

# Glooko requires a lastGuid parameter but ignores its value; any GUID works.
_LAST_GUID = "1e0c094e-1e54-4a4f-8e6a-f94484b53789"
_LOOKBACK = timedelta(days=2)
_READING_INTERVAL = timedelta(minutes=5)

# Glooko validates that the sign-in comes from a known mobile app build.
_DEVICE_INFORMATION = {
    "applicationType": "logbook",
    "os": "android",
    "osVersion": "33",
    "device": "Google Pixel 4a",
    "deviceManufacturer": "Google",
    "deviceModel": "Pixel 4a",
    "serialNumber": "ab43bfjdj3423421fb",
    "clinicalResearch": False,
    "deviceId": "716c34bac673f4b9",
    "applicationVersion": "6.1.3",
    "buildNumber": "0",
    "gitHash": "g4fbed2011b",
}

_REJECTED_LOGIN_STATUSES = {401, 403, 422}


def base_url_for(server: str | None) -> str:
    """Return the API base URL for a ``CONNECT_GLOOKO_SERVER`` value."""
    if not server or server == "default":
        server = DEFAULT_SERVER
    return f"https://{server}"


def build_http_client(server: str | None = None, timeout: float = 30.0) -> httpx.AsyncClient:
    """Create the httpx client used for every Glooko request."""
    return httpx.AsyncClient(
        base_url=base_url_for(server),
        follow_redirects=False,
        timeout=timeout,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
    )


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class GlookoClient:
    """Thin async client for the Glooko endpoints used by the driver.

    The httpx client is injected and owned by the caller, so tests can pass
    one built on ``httpx.MockTransport``.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> SessionToken:
        """Sign in and look up the patient code.

        Returns:
            SessionToken with the cookie header as token and the glookoCode
            as account id.

        Raises:
            AuthenticationError: Login rejected, or no cookie / patient code.
            FetchError:          Network failure or unexpected status.
        """
        body = {
            "userLogin": {"email": email, "password": password},
            "deviceInformation": _DEVICE_INFORMATION,
        }
        response = await self._request("POST", SIGN_IN_PATH, json=body, login=True)

        cookie = "; ".join(f"{name}={value}" for name, value in response.cookies.items())
        if not cookie:
            raise AuthenticationError("Glooko sign-in returned no session cookie")

        glooko_code = await self.get_glooko_code(cookie)
        logger.info("Glooko: signed in, patient %s", glooko_code)
        return SessionToken(token=cookie, account_id=glooko_code)

    async def get_glooko_code(self, cookie: str) -> str:
        """Return the current patient's identifier for data requests."""
        response = await self._request(
            "GET", SESSION_USERS_PATH, headers={"Cookie": cookie}, login=True
        )
        data = self._json(response)
        code = (data.get("currentPatient") or {}).get("glookoCode")
        if not code:
            raise AuthenticationError("Glooko session has no current patient")
        return str(code)

    # ------------------------------------------------------------------
    # Data retrieval
    # ------------------------------------------------------------------

    async def fetch(
        self,
        path: str,
        cookie: str,
        glooko_code: str,
        since: datetime | None,
        now: datetime,
    ) -> dict:
        """Retrieve raw data from one Glooko endpoint.

        Glooko never returns more than two days of history; ``since`` only
        narrows the window further.

        Args:
            path:        Endpoint path, e.g. ``CGM_READINGS_PATH``.
            cookie:      Session cookie header.
            glooko_code: Patient identifier.
            since:       Time of the last retrieved record (None = full lookback).
            now:         Upper bound of the window.

        Returns:
            The decoded JSON response.

        Raises:
            SessionRejectedError: Glooko answered 401 (cookie no longer valid).
            FetchError:           Any other failure.
        """
        start = now - _LOOKBACK
        last = min(max(start, since), now) if since is not None else start
        limit = max(1, math.ceil((now - last) / _READING_INTERVAL))
        params = {
            "patient": glooko_code,
            "startDate": _to_iso(start),
            "endDate": _to_iso(now),
            "lastGuid": _LAST_GUID,
            "lastUpdatedAt": _to_iso(last),
            "limit": str(limit),
        }
        response = await self._request("GET", path, params=params, headers={"Cookie": cookie})
        return self._json(response)

    async def get_cgm_readings(self, cookie: str, glooko_code: str, since: datetime | None, now: datetime) -> dict:
        return await self.fetch(CGM_READINGS_PATH, cookie, glooko_code, since, now)

    async def get_normal_boluses(self, cookie: str, glooko_code: str, since: datetime | None, now: datetime) -> dict:
        return await self.fetch(NORMAL_BOLUSES_PATH, cookie, glooko_code, since, now)

    async def get_scheduled_basals(self, cookie: str, glooko_code: str, since: datetime | None, now: datetime) -> dict:
        return await self.fetch(SCHEDULED_BASALS_PATH, cookie, glooko_code, since, now)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, *, login: bool = False, **kwargs) -> httpx.Response:
        # The session cookie only travels in the explicit Cookie header;
        # the client jar is emptied around every request.
        self._http.cookies.clear()
        try:
            response = await self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if login and status in _REJECTED_LOGIN_STATUSES:
                raise AuthenticationError(f"Glooko rejected the login (HTTP {status})") from exc
            if status == 401:
                raise SessionRejectedError(f"Glooko rejected the session on {path}") from exc
            raise FetchError(f"Glooko {method} {path} failed with HTTP {status}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Glooko {method} {path} failed: {exc}") from exc
        finally:
            self._http.cookies.clear()
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as exc:
            raise FetchError(f"Glooko returned invalid JSON from {response.url.path}") from exc
        if not isinstance(data, dict):
            raise FetchError(f"Glooko returned {type(data).__name__}, expected an object")
        return data
