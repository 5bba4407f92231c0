"""Error taxonomy shared by the gateway, the batch orchestrator and the routers.

Every failure that crosses the persistence boundary is one of these classes.
The orchestrator only retries ``TransientStoreError``; ``ConflictError`` inside a
batch means "pick another uid"; everything else is terminal for the task.
"""

from __future__ import annotations

import asyncio

from sqlalchemy import exc as sa_exc


class SurveyLinkError(Exception):
    kind: str = "unknown"
    status_code: int = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(SurveyLinkError):
    kind = "validation"
    status_code = 400


class NotFoundError(SurveyLinkError):
    kind = "not_found"
    status_code = 404


class ConflictError(SurveyLinkError):
    kind = "conflict"
    status_code = 409


class TransientStoreError(SurveyLinkError):
    kind = "transient"
    status_code = 503


class UnknownError(SurveyLinkError):
    kind = "unknown"
    status_code = 500


class StoreUnavailableError(SurveyLinkError):
    """The backing store cannot be reached at all; raised before a batch starts."""

    kind = "store_unavailable"
    status_code = 503


RETRYABLE = (TransientStoreError,)


def classify(exc: BaseException, message: str = "") -> SurveyLinkError:
    """Map a driver/ORM exception onto the taxonomy."""
    if isinstance(exc, SurveyLinkError):
        return exc
    detail = message or f"{type(exc).__name__}: {exc}"
    if isinstance(exc, sa_exc.IntegrityError):
        return ConflictError(detail)
    if isinstance(exc, sa_exc.DBAPIError) and getattr(exc, "connection_invalidated", False):
        return TransientStoreError(detail)
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return TransientStoreError(detail)
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return TransientStoreError(detail)
    return UnknownError(detail)
