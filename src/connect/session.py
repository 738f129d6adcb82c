"""Authenticated session lifecycle for one source account.

State machine (evaluated lazily on every ``ensure_session`` call)::

    UNAUTHENTICATED --authenticate--> ACTIVE
    ACTIVE --now >= refresh_after--> STALE --refresh--> ACTIVE
    STALE --refresh fails--> UNAUTHENTICATED --authenticate--> ACTIVE
    ACTIVE | STALE --now >= expire_at--> EXPIRED --discard--> UNAUTHENTICATED

No background timer is involved: staleness and expiry are detected against
the ``now`` passed in by the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum

from src.connect.base import Authenticator, Session, SessionToken
from src.connect.errors import AuthenticationError, RefreshError

logger = logging.getLogger("connect.session")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    STALE = "stale"
    EXPIRED = "expired"


class SessionManager:
    """Own the session of one driver and keep it usable.

    Usage::

        sessions = SessionManager(authenticator, refresh_delay_ms=..., expire_delay_ms=...)
        session = await sessions.ensure_session(now)
    """

    def __init__(
        self,
        authenticator: Authenticator,
        *,
        refresh_delay_ms: int,
        expire_delay_ms: int,
    ) -> None:
        """Initialize the manager.

        Args:
            authenticator:    Source collaborator that signs in / refreshes.
            refresh_delay_ms: Age at which a session becomes stale.
            expire_delay_ms:  Age at which a session must be discarded.

        Raises:
            ValueError: If the delays are not ``0 < refresh < expire``.
        """
        if refresh_delay_ms <= 0 or expire_delay_ms <= 0:
            raise ValueError("Session delays must be positive")
        if refresh_delay_ms >= expire_delay_ms:
            raise ValueError(
                f"refresh_delay_ms ({refresh_delay_ms}) must be lower than "
                f"expire_delay_ms ({expire_delay_ms})"
            )
        self._authenticator = authenticator
        self._refresh_delay = timedelta(milliseconds=refresh_delay_ms)
        self._expire_delay = timedelta(milliseconds=expire_delay_ms)
        self._session: Session | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    def state(self, now: datetime) -> SessionState:
        session = self._session
        if session is None:
            return SessionState.UNAUTHENTICATED
        if session.is_expired(now):
            return SessionState.EXPIRED
        if session.is_stale(now):
            return SessionState.STALE
        return SessionState.ACTIVE

    async def ensure_session(self, now: datetime) -> Session:
        """Return a session that is valid at ``now``.

        Performs at most one sign-in or one refresh, except that a failed
        refresh is followed by a sign-in within the same call.

        Raises:
            AuthenticationError: Sign-in was rejected; no session is kept.
            FetchError:          Transport failure while signing in.
        """
        session = self._session
        if session is not None and session.is_expired(now):
            logger.info("Session for %s expired at %s, discarding", session.account_id, session.expire_at)
            self._session = session = None

        if session is None:
            return await self._authenticate(now)

        if session.is_stale(now):
            try:
                return await self._refresh(session, now)
            except RefreshError as exc:
                logger.warning("Session refresh failed (%s); signing in again", exc)
                self._session = None
                return await self._authenticate(now)

        return session

    def invalidate(self) -> None:
        """Drop the current session; the next call signs in again."""
        if self._session is not None:
            logger.info("Session for %s invalidated", self._session.account_id)
        self._session = None

    # ------------------------------------------------------------------

    async def _authenticate(self, now: datetime) -> Session:
        try:
            token = await self._authenticator.authenticate()
        except AuthenticationError:
            self._session = None
            raise
        self._session = self._issue(token, now)
        logger.info(
            "Signed in as %s; refresh after %s, expires at %s",
            token.account_id, self._session.refresh_after, self._session.expire_at,
        )
        return self._session

    async def _refresh(self, session: Session, now: datetime) -> Session:
        try:
            token = await self._authenticator.refresh(session)
        except RefreshError:
            raise
        except Exception as exc:
            raise RefreshError(str(exc)) from exc
        self._session = self._issue(token, now)
        logger.info("Refreshed session for %s", token.account_id)
        return self._session

    def _issue(self, token: SessionToken, now: datetime) -> Session:
        return Session(
            token=token.token,
            account_id=token.account_id,
            created_at=now,
            refresh_after=now + self._refresh_delay,
            expire_at=now + self._expire_delay,
        )
