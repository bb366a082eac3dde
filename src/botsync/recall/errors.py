"""Classification helpers for Recall.ai API failures.

The client raises ``httpx.HTTPStatusError`` for non-2xx responses and
``httpx.TransportError`` for network failures. Callers decide how to react
by asking these helpers instead of comparing status codes inline.
"""

from __future__ import annotations

import httpx

_DISCONNECTION_STATUSES = frozenset({401, 403, 404})


def status_code_of(exc: BaseException) -> int | None:
    """Return the HTTP status code carried by ``exc``, if any."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_conflict(exc: BaseException) -> bool:
    """409: the provider already holds a conflicting bot for the event."""
    return status_code_of(exc) == 409


def is_not_found(exc: BaseException) -> bool:
    return status_code_of(exc) == 404


def is_disconnection(exc: BaseException) -> bool:
    """401/403/404 on a calendar fetch mean the connection is gone."""
    return status_code_of(exc) in _DISCONNECTION_STATUSES


def is_transient(exc: BaseException) -> bool:
    """Network errors, timeouts, 429 and 5xx are worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    status = status_code_of(exc)
    if status is None:
        return False
    return status == 429 or status >= 500
