# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

from enum import Enum


class ExpiryPermissionsError(Exception):
    """Base class for all expiry-permissions errors."""

    category = "permissions"

    def __init__(self, message: str, code: str = "PERMISSIONS_ERROR") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        """Whether repeating the same call unchanged could succeed."""
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationErrorKind(str, Enum):
    """Caller-input or state-precondition violations."""

    INVALID_AMOUNT = "invalid_amount"
    INVALID_EXPIRY = "invalid_expiry"
    INVALID_SPENDER = "invalid_spender"
    PERMISSION_REVOKED = "permission_revoked"
    PERMISSION_EXPIRED = "permission_expired"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    NOT_AUTHORIZED = "not_authorized"
    ALREADY_REVOKED = "already_revoked"
    PERMISSION_NOT_FOUND = "permission_not_found"
    NOT_ACTIVE = "not_active"


class PermissionValidationError(ExpiryPermissionsError):
    """
    Raised when an intent fails validation against the known permission state.

    Validation failures are never retried: the same inputs against the same
    state fail the same way.

    Attributes:
        kind: The :class:`ValidationErrorKind` that failed.
        permission_id: The permission the intent referred to, when known.
    """

    category = "validation"

    def __init__(
        self,
        kind: ValidationErrorKind,
        message: str,
        permission_id: str | None = None,
    ) -> None:
        super().__init__(message, code=kind.value.upper())
        self.kind = kind
        self.permission_id = permission_id


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerError(ExpiryPermissionsError):
    """Base class for failures reported by (or while talking to) a ledger."""

    category = "ledger"


class LedgerUnreachableError(LedgerError):
    """The ledger could not be contacted. Nothing was delivered to it."""

    def __init__(self, message: str = "Ledger is unreachable.") -> None:
        super().__init__(message, code="LEDGER_UNREACHABLE")

    @property
    def retryable(self) -> bool:
        return True


class LedgerTimeoutError(LedgerError):
    """The ledger did not answer in time. The request may or may not have landed."""

    def __init__(self, message: str = "Ledger did not respond in time.") -> None:
        super().__init__(message, code="LEDGER_TIMEOUT")

    @property
    def retryable(self) -> bool:
        return True


class LedgerRejectedError(LedgerError):
    """
    The ledger refused a mutation because it violated a ledger-side rule.

    Attributes:
        reason: The ledger's reason string, verbatim (e.g. ``'E_INSUFFICIENT_PERMISSION'``).
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"Ledger rejected the transaction: {reason}", code="LEDGER_REJECTED")
        self.reason = reason


class MalformedResponseError(LedgerError):
    """The ledger answered with data the adapter could not interpret."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MALFORMED_RESPONSE")


class LedgerStorageError(LedgerError):
    """
    A locally stored ledger could not make a transaction durable.

    The transaction is not applied: the ledger keeps its previous state.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot persist ledger state to '{path}': {reason}", code="LEDGER_STORAGE_FAILED")
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class LifecycleError(ExpiryPermissionsError):
    """Failures of a lifecycle transition that are not plain validation errors."""

    category = "lifecycle"


class UnsupportedOperationError(LifecycleError):
    """Raised when the configured ledger cannot perform the requested operation."""

    def __init__(self, operation: str, network: str | None = None) -> None:
        network_text = f" on ledger '{network}'" if network else ""
        super().__init__(
            f"Operation '{operation}' is not supported{network_text}.",
            code="UNSUPPORTED_OPERATION",
        )
        self.operation = operation
        self.network = network


class StaleRetryExhaustedError(LifecycleError):
    """Raised when a mutation is rejected again after its single refetch-and-retry."""

    def __init__(self, permission_id: str, reason: str) -> None:
        super().__init__(
            f"Permission '{permission_id}' was rejected again after refreshing: {reason}",
            code="STALE_RETRY_EXHAUSTED",
        )
        self.permission_id = permission_id
        self.reason = reason


class SubmissionUncertainError(LifecycleError):
    """
    The outcome of a submitted mutation is unknown.

    The transaction may have been applied despite the missing acknowledgment.
    Callers must re-fetch the permission before repeating the intent.

    Attributes:
        operation: The mutation that was submitted.
        permission_id: The affected permission, when known.
        cause: The underlying :class:`LedgerError`, if any.
    """

    def __init__(
        self,
        operation: str,
        permission_id: str | None = None,
        cause: LedgerError | None = None,
    ) -> None:
        target = f" for permission '{permission_id}'" if permission_id else ""
        detail = f": {cause.message}" if cause is not None else ""
        super().__init__(
            f"Outcome of '{operation}'{target} is unknown{detail}",
            code="SUBMISSION_UNCERTAIN",
        )
        self.operation = operation
        self.permission_id = permission_id
        self.cause = cause


class SubmissionFailedError(LifecycleError):
    """The mutation was definitely not applied by the ledger."""

    def __init__(
        self,
        operation: str,
        cause: LedgerError,
        permission_id: str | None = None,
    ) -> None:
        target = f" for permission '{permission_id}'" if permission_id else ""
        super().__init__(
            f"'{operation}'{target} failed: {cause.message}",
            code="SUBMISSION_FAILED",
        )
        self.operation = operation
        self.permission_id = permission_id
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.cause.retryable


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheWriteError(ExpiryPermissionsError):
    """Raised when the local cache cannot make a write durable."""

    category = "cache"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot persist cache to '{path}': {reason}", code="CACHE_WRITE_FAILED")
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(ExpiryPermissionsError):
    """Raised when the package is misconfigured."""

    category = "configuration"

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")
