"""Provider error taxonomy used by the sync engine."""

import asyncio
import sqlite3
from typing import Optional

import httpx


class ProviderError(Exception):
    """A calendar provider call failed.

    ``retryable`` tells the activity runner whether another attempt can
    succeed; permission and malformed-request failures are not retried.
    """

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    """Rate limiting, 5xx responses and network failures."""

    retryable = True


class SyncTokenExpiredError(ProviderError):
    """The provider rejected a sync cursor (HTTP 410).

    Recovery is a caller-requested full sync; the engine never falls back to
    one on its own.
    """


class WatchUnsupportedError(ProviderError):
    """The provider does not offer push notifications for this resource."""


def is_retryable(exc: BaseException) -> bool:
    """Decide whether an activity failure is worth another attempt."""
    if isinstance(exc, ProviderError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        return "locked" in str(exc).lower()
    # httplib2/socket failures surface as OSError subclasses
    return isinstance(exc, OSError) and not isinstance(exc, (PermissionError, FileNotFoundError))
