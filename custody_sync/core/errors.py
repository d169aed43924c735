from fastapi import Request
from fastapi.responses import JSONResponse
from typing import Any, Optional

from .config import settings


class OfflineQueueError(Exception):
    """Local durable queue could not complete an operation"""


class QueueQuotaExceededError(OfflineQueueError):
    """Enqueue would exceed the local storage quota"""

    def __init__(
        self,
        message: str = "Offline storage quota exceeded",
        requested_bytes: Optional[int] = None,
        quota_bytes: Optional[int] = None,
    ):
        self.requested_bytes = requested_bytes
        self.quota_bytes = quota_bytes
        super().__init__(message)


class QueueStorageError(OfflineQueueError):
    """Local store is unavailable or corrupt"""


class DraftRejectedError(ValueError):
    """Draft failed local validation and was not queued"""


class RemoteWriteError(Exception):
    """A remote create/append/upload call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class SyncEngineError(Exception):
    """A sync cycle could not run; queued records are left untouched"""


class AssetUnavailableError(Exception):
    """Neither the network nor the asset cache could serve a request"""


def sanitize_error(error: Any) -> str:
    """
    Map an error to a user-facing message

    Development shows the raw message. Elsewhere only generic messages are
    returned so remote error details do not leak into notifications.
    """
    if settings.ENVIRONMENT == "development":
        return str(error) or "Unknown error"

    code = getattr(error, "code", None) or ""
    message = str(error)

    if code == "PGRST116":
        return "Access denied"
    if code == "23505":
        return "This record already exists"
    if code.startswith("23"):
        return "Invalid data provided"
    if code.startswith("42"):
        return "Invalid request"
    if "JWT" in message:
        return "Authentication error. Please log in again."

    return "An error occurred. Please try again."


def problem_response(
    request: Request,
    status: int,
    code: str,
    title: str,
    detail: Any,
) -> JSONResponse:
    """
    Return RFC 7807 Problem Details response

    https://datatracker.ietf.org/doc/html/rfc7807
    """
    return JSONResponse(
        status_code=status,
        content={
            "type": f"https://custody-sync.local/errors/{code}",
            "title": title,
            "status": status,
            "code": code,
            "detail": detail,
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
        },
    )
