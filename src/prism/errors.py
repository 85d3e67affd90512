"""Error taxonomy shared by adapters, the sync worker and the caller-facing services.

Every error carries whether the job queue may retry it. Internal detail stays in
logs and connection metadata; callers only ever see ``public_message``.
"""

from __future__ import annotations

import asyncio


class PrismError(Exception):
    """Base error. Non-retryable unless a subclass says otherwise."""

    code = "internal_error"
    retryable = False
    public_message = "Something went wrong, please try again later."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class NotFoundError(PrismError):
    """Missing user or connection."""

    code = "not_found"
    public_message = "Resource not found."


class ValidationError(PrismError):
    """Caller error: malformed platform identifier, period, limit or cron expression."""

    code = "bad_request"
    public_message = "Invalid request."


class InvalidTransitionError(ValidationError):
    """A sync status change that the state machine does not allow."""

    code = "invalid_transition"


class ConfigurationError(PrismError):
    """The process is not set up to serve this request (e.g. no adapter for a platform)."""

    code = "configuration_error"
    public_message = "This platform is not supported."


class ServiceUnavailableError(PrismError):
    """Remote platform API failure or timeout."""

    code = "service_unavailable"
    retryable = True
    public_message = "The platform is temporarily unavailable, please try again later."


class InvalidCredentialError(PrismError):
    """Unencrypted, malformed, revoked or expired credential. The connection is deactivated."""

    code = "invalid_credential"
    public_message = "Please reconnect this platform."


def classify_error(exc: BaseException) -> PrismError:
    """Map any exception raised during a sync to the taxonomy.

    Unknown exceptions are treated as transient remote failures so the queue's
    retry policy gets a chance at them.
    """
    if isinstance(exc, PrismError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ServiceUnavailableError("Platform call timed out")
    return ServiceUnavailableError(f"{type(exc).__name__}: {exc}")


SYNC_STATUS_MESSAGES = {
    "PENDING": "Sync queued.",
    "SYNCING": "Sync in progress.",
    "COMPLETED": "Up to date.",
    "FAILED": "Sync failed, please try again.",
}


def public_message(sync_status: str) -> str:
    """Generic user-facing text for a connection's sync state."""
    return SYNC_STATUS_MESSAGES.get(sync_status, SYNC_STATUS_MESSAGES["FAILED"])
