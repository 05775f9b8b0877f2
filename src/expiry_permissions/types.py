# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, field_validator, model_validator

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ─── Enumerations ─────────────────────────────────────────────────────────────


class AccessScope(str, Enum):
    """
    Capability granted to the spender of a file-sharing permission.

    Only consulted by downstream authorisation checks; the lifecycle engine
    carries it without interpreting it.
    """

    VIEW = "view"
    DOWNLOAD = "download"
    FULL = "full"


class PermissionStatus(str, Enum):
    """Derived status of a permission. ``ACTIVE`` is the only non-terminal state."""

    ACTIVE = "active"
    EXPIRED = "expired"
    FULLY_SPENT = "fully_spent"
    REVOKED = "revoked"

    @property
    def terminal(self) -> bool:
        return self is not PermissionStatus.ACTIVE


class MutationKind(str, Enum):
    GRANT = "grant"
    SPEND = "spend"
    REVOKE = "revoke"
    EXTEND = "extend"


# ─── Permission ───────────────────────────────────────────────────────────────


class AttachedResource(BaseModel, frozen=True):
    """
    Metadata for an artifact shared through a permission.

    Attributes:
        name: Display name of the artifact (e.g. a file name).
        size_bytes: Size of the artifact in bytes.
        media_type: MIME type of the artifact.
        content_ref: Opaque reference to the content (hash, URI, ...).
    """

    name: str = Field(..., min_length=1)
    size_bytes: int = Field(default=0, ge=0)
    media_type: str = "application/octet-stream"
    content_ref: str | None = None


class GrantSpec(BaseModel, frozen=True):
    """Input model for a ``grant`` transition."""

    owner: str
    spender: str
    amount: int
    expiry: datetime
    access_scope: AccessScope = AccessScope.VIEW
    attached_resource: AttachedResource | None = None

    @field_validator("expiry")
    @classmethod
    def expiry_is_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class PermissionRecord(BaseModel, frozen=True):
    """
    The canonical permission entity.

    ``status`` is deliberately not a field: it depends on the current time and
    is derived on every read with :func:`expiry_permissions.record.derive_status`.

    Attributes:
        id: Ledger-assigned identifier, stable for the record's lifetime.
        owner: Principal that created the permission and may revoke it.
        spender: Principal granted the allowance.
        amount: Allowance ceiling in base units.
        spent: Cumulative amount consumed. Never exceeds ``amount``.
        expiry: UTC instant after which the permission is unusable.
        revoked: True once the owner has revoked the permission.
        created_at: UTC instant the grant was recorded.
        revoked_at: UTC instant of revocation, when known.
        access_scope: Capability granted to the spender.
        attached_resource: Optional shared artifact metadata.
    """

    id: str = Field(..., min_length=1)
    owner: str
    spender: str
    amount: int = Field(..., ge=0)
    spent: int = Field(default=0, ge=0)
    expiry: datetime
    revoked: bool = False
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    access_scope: AccessScope = AccessScope.VIEW
    attached_resource: AttachedResource | None = None

    @field_validator("expiry", "created_at", "revoked_at")
    @classmethod
    def timestamps_are_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def spent_within_amount(self) -> PermissionRecord:
        if self.spent > self.amount:
            raise ValueError(f"spent ({self.spent}) must not exceed amount ({self.amount})")
        return self

    def involves(self, principal: str) -> bool:
        """Return True if ``principal`` is the owner or the spender."""
        return principal in (self.owner, self.spender)


# ─── Sync bookkeeping ─────────────────────────────────────────────────────────


class PendingMutation(BaseModel, frozen=True):
    """
    An intent applied optimistically to the cache and not yet resolved by the ledger.

    Attributes:
        kind: Which transition was submitted.
        sequence: Engine-wide ordering stamp taken when the mutation started.
            Compared against the sequence of poll fetches to detect stale reads.
        version: The ``local_optimistic_version`` this mutation produced.
        submitted_at: Wall-clock submission time, for display.
        amount: Spend amount, for ``spend`` mutations.
        new_expiry: Requested expiry, for ``extend`` mutations.
    """

    kind: MutationKind
    sequence: int
    version: int
    submitted_at: datetime
    amount: int | None = None
    new_expiry: datetime | None = None


class SyncState(BaseModel, frozen=True):
    """
    Cache-local bookkeeping for one permission. Never sent to the ledger.

    Attributes:
        last_confirmed_from_ledger: Wall-clock time of the last ledger-confirmed value.
        confirmed_sequence: Engine sequence stamp of the last ledger-confirmed value.
        pending_mutation: The in-flight optimistic intent, if any.
        local_optimistic_version: Incremented on every optimistic write.
        confirmed: The last ledger-confirmed record, used for rollback. None for
            a provisional grant that the ledger has not confirmed yet.
    """

    last_confirmed_from_ledger: datetime | None = None
    confirmed_sequence: int = 0
    pending_mutation: PendingMutation | None = None
    local_optimistic_version: int = 0
    confirmed: PermissionRecord | None = None


class CacheEntry(BaseModel, frozen=True):
    """
    One cached permission: the record the UI shows plus its sync bookkeeping.

    ``revision`` is managed by the cache and bumped on every successful upsert;
    callers pass the revision they read back to :meth:`PermissionCache.upsert`
    to get compare-and-set semantics.
    """

    record: PermissionRecord
    sync: SyncState = Field(default_factory=SyncState)
    revision: int = 0

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def pending(self) -> bool:
        return self.sync.pending_mutation is not None


# ─── Ledger results ───────────────────────────────────────────────────────────


class TransactionReceipt(BaseModel, frozen=True):
    """
    Acknowledgment of a confirmed ledger transaction.

    Attributes:
        transaction_ref: Ledger transaction reference (e.g. a transaction hash).
        confirmed_record: The record as the ledger holds it after the
            transaction, when the ledger returns it.
    """

    transaction_ref: str
    confirmed_record: PermissionRecord | None = None


class LedgerCapabilities(BaseModel, frozen=True):
    """
    Capability set advertised by a ledger adapter.

    Attributes:
        network: Display name of the network.
        persistent: Whether state survives process restarts.
        supports_extend: Whether the ledger implements the ``extend`` transition.
    """

    network: str
    persistent: bool
    supports_extend: bool = False


class SignerResult(BaseModel, frozen=True):
    """Outcome of handing a transaction payload to the wallet/identity signer."""

    success: bool
    transaction_ref: str | None = None
    reason: str | None = None


Signer = Callable[[dict[str, Any]], Awaitable[SignerResult]]


# ─── Views ────────────────────────────────────────────────────────────────────

EXPIRING_SOON_WINDOW = timedelta(days=7)


class PermissionView(BaseModel, frozen=True):
    """
    Point-in-time rendering of a cached permission, with status derived at ``as_of``.

    Attributes:
        record: The cached record (optimistic while ``pending`` is True).
        status: Status derived from ``record`` at ``as_of``.
        remaining: Allowance left to spend.
        time_remaining: Time until expiry; zero once expired.
        expiring_soon: True when active and expiring within seven days.
        pending: True while an optimistic mutation awaits the ledger.
        last_confirmed_from_ledger: When the ledger last confirmed this record.
        as_of: The instant the status was derived for.
    """

    record: PermissionRecord
    status: PermissionStatus
    remaining: int
    time_remaining: timedelta
    expiring_soon: bool
    pending: bool
    last_confirmed_from_ledger: datetime | None
    as_of: datetime
