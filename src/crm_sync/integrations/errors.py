"""Sync error taxonomy.

The worker maps every exception onto one of these classes:
- TransientSyncError: timeouts, connection errors, 429, 5xx. Retried with backoff.
- AuthSyncError: revoked refresh token, 401/403, missing credential.
  Disconnects the connection and dead-letters its queued jobs.
- ValidationSyncError: the provider rejected the payload. Dead-lettered
  immediately with the provider body attached.

Anything else raised inside a job is treated as transient.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all sync engine errors."""

    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientSyncError(SyncError):
    """Temporary failure; the job is rescheduled.

    Args:
        retry_after: Seconds the provider asked us to wait (Retry-After), if any.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class AuthSyncError(SyncError):
    """Credential is missing, revoked, or access was denied."""


class ValidationSyncError(SyncError):
    """Provider rejected the request shape. Retrying cannot succeed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.body = body


class UnsupportedEntityError(ValidationSyncError):
    """Provider adapter has no endpoint for this entity type."""


class WebhookRejectedError(SyncError):
    """Webhook could not be attributed to a connected tenant or failed signature checks."""


class MalformedWebhookError(SyncError):
    """Webhook body could not be parsed."""
