"""Error taxonomy shared by the service, its routers and the client façade.

Malformed log lines never surface as exceptions: the parser drops them.
Everything else carries enough detail for the caller to decide on a retry.
"""
from __future__ import annotations


class SessionDashError(Exception):
    """Base class for all surfaced errors."""

    status_code = 500


class InvalidRequestError(SessionDashError, ValueError):
    """Malformed identity or request payload."""

    status_code = 400


class NotFoundError(SessionDashError):
    """Unknown session, turn index or branch id."""

    status_code = 404


class ConflictError(SessionDashError):
    """The log changed since the caller's last read; re-fetch before retrying."""

    status_code = 409


class StorageError(SessionDashError):
    """Durable read/write failure. Nothing was committed."""

    status_code = 500


class UnavailableError(SessionDashError):
    """Transient client or network failure."""

    status_code = 503


_BY_STATUS = {
    400: InvalidRequestError,
    404: NotFoundError,
    409: ConflictError,
    500: StorageError,
    503: UnavailableError,
}


def error_for_status(status_code: int, detail: str) -> SessionDashError:
    """Rebuild the typed error for an HTTP status returned by the API."""
    cls = _BY_STATUS.get(status_code)
    if cls is None:
        cls = UnavailableError if status_code >= 500 else InvalidRequestError
    return cls(detail)
