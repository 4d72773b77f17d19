"""Exception types shared by the directory layer and the provisioning engine."""
from __future__ import annotations

from typing import Optional


class KeystoneError(RuntimeError):
    """Base exception for KeyStone operations."""


class PermissionDenied(KeystoneError):
    """Raised when the caller's privilege classification is insufficient."""


class NotFound(KeystoneError):
    """Raised when a target principal is absent or outside the required OU."""


class ConnectivityError(KeystoneError):
    """Raised when a domain controller cannot be reached or the bind is rejected."""

    def __init__(self, domain: str, message: str) -> None:
        super().__init__(f"Unable to reach directory for '{domain}': {message}")
        self.domain = domain


NO_SUCH_OBJECT = 32
ENTRY_ALREADY_EXISTS = 68


class DirectoryOperationFailed(KeystoneError):
    """Raised when the directory service rejects an operation."""

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        result_code: Optional[int] = None,
    ) -> None:
        super().__init__(message + (f" ({detail})" if detail else ""))
        self.message = message
        self.detail = detail
        self.result_code = result_code


class StaleObjectError(DirectoryOperationFailed):
    """Raised when the bound object no longer exists on the controller that was asked."""


class RetryExhausted(KeystoneError):
    """Records that a retried directory write never succeeded.

    Never raised out of an operation; used for logging and outcome reporting.
    """

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def directory_error_from_result(message: str, result: Optional[dict]) -> DirectoryOperationFailed:
    """Build a typed error from an ldap3 ``connection.result`` payload."""

    result = result or {}
    code = result.get("result")
    description = result.get("description") or "Unknown error"
    detail = result.get("message") or description
    if description != detail:
        detail = f"{description}: {detail}"
    if code == NO_SUCH_OBJECT:
        return StaleObjectError(message, detail, code)
    return DirectoryOperationFailed(message, detail, code)


__all__ = [
    "ConnectivityError",
    "DirectoryOperationFailed",
    "ENTRY_ALREADY_EXISTS",
    "KeystoneError",
    "NO_SUCH_OBJECT",
    "NotFound",
    "PermissionDenied",
    "RetryExhausted",
    "StaleObjectError",
    "directory_error_from_result",
]
