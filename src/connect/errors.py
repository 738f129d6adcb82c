"""Error taxonomy for the polling driver.

Only ``PollingScheduler`` decides what happens after an error: retry with
backoff, terminal failure, or nominal rescheduling.  ``SessionManager``
absorbs ``RefreshError`` itself by falling back to a full sign-in.
"""

from __future__ import annotations


class ConnectError(Exception):
    """Base exception for all driver and source errors."""


class AuthenticationError(ConnectError):
    """Credentials were rejected or the source refused the login.

    Not retried within a cycle's backoff budget; the driver reports a
    terminal failure and tries again at the nominal interval.
    """


class RefreshError(ConnectError):
    """Refreshing an existing session failed (or is unsupported)."""


class FetchError(ConnectError):
    """Retrieving data failed: network error, non-2xx response, bad payload."""


class SessionRejectedError(FetchError):
    """The source rejected the session as invalid while fetching data."""


class TransformError(ConnectError):
    """Raw records could not be turned into output records."""
