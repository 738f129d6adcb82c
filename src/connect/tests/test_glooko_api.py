"""Tests for the Glooko HTTP client, using httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Callable

import httpx
import pytest

from src.connect.errors import AuthenticationError, FetchError, SessionRejectedError
from src.connect.sources.glooko.api import (
    CGM_READINGS_PATH,
    SESSION_USERS_PATH,
    SIGN_IN_PATH,
    GlookoClient,
    base_url_for,
)
from src.connect.tests.conftest import T0

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(handler: Handler) -> GlookoClient:
    http = httpx.AsyncClient(base_url="https://api.glooko.com", transport=httpx.MockTransport(handler))
    return GlookoClient(http)


def sign_in_handler(
    *,
    login_status: int = 200,
    cookies: list[str] | None = None,
    users_body: dict | None = None,
    seen: list[httpx.Request] | None = None,
) -> Handler:
    if cookies is None:
        cookies = ["_logbook-web_session=abc123; Path=/; HttpOnly"]
    if users_body is None:
        users_body = {"currentPatient": {"glookoCode": "us-east-1-patient"}}

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == SIGN_IN_PATH:
            headers = [("set-cookie", c) for c in cookies]
            return httpx.Response(login_status, headers=headers, json={})
        if request.url.path == SESSION_USERS_PATH:
            return httpx.Response(200, json=users_body)
        return httpx.Response(404)

    return handler


# ---------------------------------------------------------------------------
# Server selection
# ---------------------------------------------------------------------------


class TestBaseUrl:
    @pytest.mark.parametrize("server", [None, "", "default"])
    def test_default_server(self, server: str | None) -> None:
        assert base_url_for(server) == "https://api.glooko.com"

    def test_regional_server(self) -> None:
        assert base_url_for("eu.api.glooko.com") == "https://eu.api.glooko.com"


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class TestSignIn:
    @pytest.mark.asyncio
    async def test_returns_cookie_and_patient_code(self) -> None:
        seen: list[httpx.Request] = []
        client = make_client(sign_in_handler(seen=seen))

        token = await client.sign_in("user@example.com", "hunter2")

        assert token.token == "_logbook-web_session=abc123"
        assert token.account_id == "us-east-1-patient"
        users_request = seen[-1]
        assert users_request.url.path == SESSION_USERS_PATH
        assert users_request.headers["Cookie"] == "_logbook-web_session=abc123"

    @pytest.mark.asyncio
    async def test_sends_credentials_with_device_information(self) -> None:
        seen: list[httpx.Request] = []
        client = make_client(sign_in_handler(seen=seen))

        await client.sign_in("user@example.com", "hunter2")

        body = json.loads(seen[0].content)
        assert seen[0].method == "POST"
        assert body["userLogin"] == {"email": "user@example.com", "password": "hunter2"}
        assert body["deviceInformation"]["applicationType"] == "logbook"

    @pytest.mark.asyncio
    async def test_joins_multiple_cookies(self) -> None:
        client = make_client(sign_in_handler(cookies=["a=1; Path=/", "b=2; Path=/"]))

        token = await client.sign_in("user@example.com", "pw")

        assert sorted(token.token.split("; ")) == ["a=1", "b=2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 422])
    async def test_rejected_login_is_an_authentication_error(self, status: int) -> None:
        client = make_client(sign_in_handler(login_status=status))
        with pytest.raises(AuthenticationError):
            await client.sign_in("user@example.com", "wrong")

    @pytest.mark.asyncio
    async def test_server_error_during_login_is_retryable(self) -> None:
        client = make_client(sign_in_handler(login_status=503))
        with pytest.raises(FetchError):
            await client.sign_in("user@example.com", "pw")

    @pytest.mark.asyncio
    async def test_missing_cookie_is_an_authentication_error(self) -> None:
        client = make_client(sign_in_handler(cookies=[]))
        with pytest.raises(AuthenticationError, match="cookie"):
            await client.sign_in("user@example.com", "pw")

    @pytest.mark.asyncio
    async def test_missing_patient_is_an_authentication_error(self) -> None:
        client = make_client(sign_in_handler(users_body={"currentPatient": None}))
        with pytest.raises(AuthenticationError, match="patient"):
            await client.sign_in("user@example.com", "pw")

    @pytest.mark.asyncio
    async def test_session_cookie_is_not_kept_in_the_client_jar(self) -> None:
        seen: list[httpx.Request] = []
        http = httpx.AsyncClient(
            base_url="https://api.glooko.com",
            transport=httpx.MockTransport(sign_in_handler(seen=seen)),
        )
        client = GlookoClient(http)

        await client.sign_in("user@example.com", "pw")
        await client.sign_in("user@example.com", "pw")

        assert len(http.cookies) == 0
        sign_ins = [r for r in seen if r.url.path == SIGN_IN_PATH]
        assert [r.headers.get("Cookie") for r in sign_ins] == [None, None]

    @pytest.mark.asyncio
    async def test_network_failure_is_a_fetch_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(FetchError):
            await client.sign_in("user@example.com", "pw")


# ---------------------------------------------------------------------------
# Data retrieval
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_first_fetch_covers_two_day_lookback(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"readings": []})

        client = make_client(handler)
        data = await client.get_cgm_readings("sess=1", "patient-1", None, T0)

        assert data == {"readings": []}
        request = seen[0]
        params = request.url.params
        assert request.url.path == CGM_READINGS_PATH
        assert request.headers["Cookie"] == "sess=1"
        assert params["patient"] == "patient-1"
        assert params["startDate"] == "2026-02-21T12:00:00.000Z"
        assert params["endDate"] == "2026-02-23T12:00:00.000Z"
        assert params["lastUpdatedAt"] == params["startDate"]
        assert params["lastGuid"]
        assert params["limit"] == "576"

    @pytest.mark.asyncio
    async def test_since_narrows_window_and_limit(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"readings": []})

        client = make_client(handler)
        await client.get_cgm_readings("sess=1", "patient-1", T0 - timedelta(minutes=12), T0)

        params = seen[0].url.params
        assert params["lastUpdatedAt"] == "2026-02-23T11:48:00.000Z"
        assert params["startDate"] == "2026-02-21T12:00:00.000Z"
        assert params["limit"] == "3"

    @pytest.mark.asyncio
    async def test_since_older_than_lookback_is_clamped(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler)
        await client.get_normal_boluses("sess=1", "patient-1", T0 - timedelta(days=5), T0)

        params = seen[0].url.params
        assert params["lastUpdatedAt"] == params["startDate"]
        assert params["limit"] == "576"

    @pytest.mark.asyncio
    async def test_window_is_never_inverted(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler)
        await client.get_cgm_readings("sess=1", "patient-1", T0 + timedelta(hours=2), T0)

        params = seen[0].url.params
        assert params["lastUpdatedAt"] == params["endDate"]
        assert params["limit"] == "1"

    @pytest.mark.asyncio
    async def test_unauthorized_data_request_rejects_session(self) -> None:
        client = make_client(lambda request: httpx.Response(401))
        with pytest.raises(SessionRejectedError):
            await client.get_scheduled_basals("sess=1", "patient-1", None, T0)

    @pytest.mark.asyncio
    async def test_server_error_is_a_fetch_error(self) -> None:
        client = make_client(lambda request: httpx.Response(500))
        with pytest.raises(FetchError) as excinfo:
            await client.get_cgm_readings("sess=1", "patient-1", None, T0)
        assert not isinstance(excinfo.value, SessionRejectedError)

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_fetch_error(self) -> None:
        client = make_client(lambda request: httpx.Response(200, content=b"<html>maintenance</html>"))
        with pytest.raises(FetchError, match="invalid JSON"):
            await client.get_cgm_readings("sess=1", "patient-1", None, T0)

    @pytest.mark.asyncio
    async def test_non_object_body_is_a_fetch_error(self) -> None:
        client = make_client(lambda request: httpx.Response(200, json=[1, 2, 3]))
        with pytest.raises(FetchError, match="expected an object"):
            await client.get_cgm_readings("sess=1", "patient-1", None, T0)

    @pytest.mark.asyncio
    async def test_timeout_is_a_fetch_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(FetchError):
            await client.get_cgm_readings("sess=1", "patient-1", None, T0)
