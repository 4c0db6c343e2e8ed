"""Classified failures surfaced by command gateway operations.

These exceptions are safe to import without pulling in the transport layer.
"""

from __future__ import annotations

from typing import Literal

FailureKind = Literal["unreachable", "unauthorized", "not_found", "conflict", "transient", "invalid"]


class CallControlError(Exception):
    kind: FailureKind = "transient"
    retryable: bool = False
    default_detail: str = "Call-control command failed."

    def __init__(
        self,
        detail: str | None = None,
        *,
        status_code: int | None = None,
        error_id: str | None = None,
    ) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail
        self.status_code = status_code
        self.error_id = error_id


class UnreachableError(CallControlError):
    kind = "unreachable"
    retryable = True
    default_detail = "Call-control service is unreachable."


class UnauthorizedError(CallControlError):
    kind = "unauthorized"
    default_detail = "Capability token is invalid or expired."


class NotFoundError(CallControlError):
    kind = "not_found"
    default_detail = "Target entity no longer exists."


class ConflictError(CallControlError):
    kind = "conflict"
    default_detail = "Command conflicts with the current call state."


class TransientError(CallControlError):
    kind = "transient"
    retryable = True
    default_detail = "Call-control service failed to process the command."


class InvalidCommandError(CallControlError, ValueError):
    """Raised before dispatch when a command's own preconditions do not hold."""

    kind = "invalid"
    default_detail = "Invalid command arguments."


ERRORS_BY_KIND: dict[str, type[CallControlError]] = {
    cls.kind: cls
    for cls in (
        UnreachableError,
        UnauthorizedError,
        NotFoundError,
        ConflictError,
        TransientError,
        InvalidCommandError,
    )
}
