"""
Error taxonomy for Club Sync.

Entity-level errors (remote failures, verification mismatches) are caught by
the reconciler and reverse-sync engine and accumulated per run. Pipeline-level
errors (configuration, missing snapshot, malformed source data) propagate and
abort the run.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base exception for all Club Sync errors."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(SyncError):
    """Required credentials or endpoints are missing."""

    pass


class SnapshotUnavailableError(SyncError):
    """No source snapshot has been imported yet."""

    pass


class SerializationError(SyncError):
    """Source payload cannot be decoded or hashed."""

    pass


class RemoteError(SyncError):
    """Base class for failures reported by a remote target."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status
        self.code = code


class RemoteNotFound(RemoteError):
    """The remote object does not exist (HTTP 404 or equivalent code)."""

    pass


class RemoteApiError(RemoteError):
    """Any other non-success response from a remote target."""

    pass


class TransientRemoteError(RemoteApiError):
    """Rate limiting, server-side or transport failure worth retrying."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        details: Any = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, code=code, details=details)
        self.retry_after = retry_after


class SyncTimeoutError(RemoteError, TimeoutError):
    """A required remote call did not complete in time."""

    pass


class StageError(SyncError):
    """A reverse-sync stage failed."""

    def __init__(self, message: str, stage: str | None = None, details: Any = None) -> None:
        super().__init__(message, details)
        self.stage = stage


class VerificationError(StageError):
    """Read-back value after a write does not match the intended value."""

    def __init__(
        self,
        field_name: str,
        expected: Any,
        actual: Any,
        stage: str | None = None,
    ) -> None:
        super().__init__(
            f"Verification failed for {field_name}: expected {expected!r}, got {actual!r}",
            stage=stage,
            details={"field": field_name, "expected": expected, "actual": actual},
        )
        self.field_name = field_name
        self.expected = expected
        self.actual = actual


class SessionExpiredError(StageError):
    """Navigation kept landing on the authentication surface."""

    pass
