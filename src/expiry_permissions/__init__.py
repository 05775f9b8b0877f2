# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
expiry-permissions: time-bounded, spend-limited permissions kept in sync
with a ledger of record.

Quick start::

    import asyncio
    from datetime import timedelta
    from expiry_permissions import PermissionService, utcnow

    async def main() -> None:
        async with PermissionService("0xa11ce") as owner:
            granted = await owner.request_grant(
                spender="0xb0b", amount=100, expiry=utcnow() + timedelta(hours=1)
            )
            print(granted.status)  # PermissionStatus.ACTIVE

    asyncio.run(main())
"""
from __future__ import annotations

from expiry_permissions.cache import FileCache, MemoryCache, PermissionCache, build_cache
from expiry_permissions.config import (
    CacheConfig,
    ExpiryConfig,
    LedgerConfig,
    PermissionPolicyConfig,
    RealLedgerConfig,
    SimulatedLedgerConfig,
    SyncConfig,
)
from expiry_permissions.errors import (
    CacheWriteError,
    ConfigurationError,
    ExpiryPermissionsError,
    LedgerError,
    LedgerRejectedError,
    LedgerStorageError,
    LedgerTimeoutError,
    LedgerUnreachableError,
    LifecycleError,
    MalformedResponseError,
    PermissionValidationError,
    StaleRetryExhaustedError,
    SubmissionFailedError,
    SubmissionUncertainError,
    UnsupportedOperationError,
    ValidationErrorKind,
)
from expiry_permissions.ledger import (
    LedgerAdapter,
    RealLedgerAdapter,
    SimulatedLedgerAdapter,
    build_ledger_adapter,
)
from expiry_permissions.lifecycle import PermissionLifecycle
from expiry_permissions.messages import user_message
from expiry_permissions.record import (
    derive_status,
    remaining_allowance,
    validate_extend,
    validate_grant,
    validate_revoke,
    validate_spend,
)
from expiry_permissions.service import IntentError, IntentResult, PermissionService, RefreshResult
from expiry_permissions.sync import SyncEngine
from expiry_permissions.types import (
    AccessScope,
    AttachedResource,
    CacheEntry,
    GrantSpec,
    LedgerCapabilities,
    MutationKind,
    PendingMutation,
    PermissionRecord,
    PermissionStatus,
    PermissionView,
    SignerResult,
    SyncState,
    TransactionReceipt,
    utcnow,
)

__version__ = "0.1.0"

__all__ = [
    # Service
    "PermissionService",
    "IntentResult",
    "IntentError",
    "RefreshResult",
    # Components
    "PermissionLifecycle",
    "SyncEngine",
    "LedgerAdapter",
    "SimulatedLedgerAdapter",
    "RealLedgerAdapter",
    "build_ledger_adapter",
    "PermissionCache",
    "MemoryCache",
    "FileCache",
    "build_cache",
    # Config
    "ExpiryConfig",
    "LedgerConfig",
    "SimulatedLedgerConfig",
    "RealLedgerConfig",
    "SyncConfig",
    "CacheConfig",
    "PermissionPolicyConfig",
    # Record helpers
    "derive_status",
    "remaining_allowance",
    "validate_grant",
    "validate_spend",
    "validate_revoke",
    "validate_extend",
    "user_message",
    # Errors
    "ExpiryPermissionsError",
    "PermissionValidationError",
    "ValidationErrorKind",
    "LedgerError",
    "LedgerUnreachableError",
    "LedgerTimeoutError",
    "LedgerRejectedError",
    "MalformedResponseError",
    "LedgerStorageError",
    "LifecycleError",
    "UnsupportedOperationError",
    "StaleRetryExhaustedError",
    "SubmissionUncertainError",
    "SubmissionFailedError",
    "CacheWriteError",
    "ConfigurationError",
    # Types
    "AccessScope",
    "AttachedResource",
    "CacheEntry",
    "GrantSpec",
    "LedgerCapabilities",
    "MutationKind",
    "PendingMutation",
    "PermissionRecord",
    "PermissionStatus",
    "PermissionView",
    "SignerResult",
    "SyncState",
    "TransactionReceipt",
    "utcnow",
    "__version__",
]
