# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from expiry_permissions.config import PermissionPolicyConfig
from expiry_permissions.errors import (
    LedgerError,
    LedgerRejectedError,
    LedgerTimeoutError,
    MalformedResponseError,
    PermissionValidationError,
    StaleRetryExhaustedError,
    SubmissionFailedError,
    SubmissionUncertainError,
    UnsupportedOperationError,
    ValidationErrorKind,
)
from expiry_permissions.record import (
    validate_extend,
    validate_grant,
    validate_revoke,
    validate_spend,
)
from expiry_permissions.sync import SyncEngine
from expiry_permissions.types import (
    CacheEntry,
    GrantSpec,
    MutationKind,
    PermissionRecord,
)

logger = logging.getLogger("expiry_permissions.lifecycle")

PROVISIONAL_ID_PREFIX = "local-"


def _classify_write_failure(
    operation: MutationKind,
    error: LedgerError,
    permission_id: str | None,
) -> SubmissionUncertainError | SubmissionFailedError:
    # A timeout or an unreadable answer may hide a transaction that landed.
    if isinstance(error, (LedgerTimeoutError, MalformedResponseError)):
        return SubmissionUncertainError(operation.value, permission_id=permission_id, cause=error)
    return SubmissionFailedError(operation.value, cause=error, permission_id=permission_id)


def _baseline(entry: CacheEntry) -> PermissionRecord:
    """The last ledger-confirmed record, falling back to the displayed one."""
    return entry.sync.confirmed or entry.record


class PermissionLifecycle:
    """
    Validates and executes permission transitions.

    States are ``ACTIVE``, ``EXPIRED``, ``FULLY_SPENT`` and ``REVOKED``; only
    ``ACTIVE`` has outgoing transitions. Status is always derived from the
    freshest known record at call time, so a cached record that was active at
    the last poll is still rejected once its expiry has passed.

    Validation failures raise :class:`PermissionValidationError` and are
    never retried. Ledger failures on the write path surface as
    :class:`SubmissionFailedError` (the ledger definitely did not apply the
    mutation) or :class:`SubmissionUncertainError` (it may have).

    Example::

        lifecycle = PermissionLifecycle(engine)
        record = await lifecycle.grant(GrantSpec(
            owner="0xa11ce", spender="0xb0b", amount=100,
            expiry=now + timedelta(hours=1),
        ))
        await lifecycle.spend(record.id, 60, requester="0xb0b")
        await lifecycle.revoke(record.id, requester="0xa11ce")
    """

    def __init__(
        self,
        engine: SyncEngine,
        policy: PermissionPolicyConfig | None = None,
    ) -> None:
        self._engine = engine
        self._policy = policy or PermissionPolicyConfig()

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # grant
    # ------------------------------------------------------------------

    async def grant(self, spec: GrantSpec, now: datetime | None = None) -> PermissionRecord:
        """
        Create a permission.

        The cache shows a provisional record (id prefixed ``local-``) until
        the ledger confirms and assigns the real id.

        Returns:
            The ledger-confirmed record.
        """
        at = now or self._engine.now()
        validate_grant(spec.owner, spec.spender, spec.amount, spec.expiry, at, self._policy)
        provisional = PermissionRecord(
            id=f"{PROVISIONAL_ID_PREFIX}{uuid4().hex}",
            owner=spec.owner,
            spender=spec.spender,
            amount=spec.amount,
            spent=0,
            expiry=spec.expiry,
            created_at=at,
            access_scope=spec.access_scope,
            attached_resource=spec.attached_resource,
        )
        ledger = self._engine.ledger
        try:
            record = await self._engine.run_mutation(
                MutationKind.GRANT,
                provisional,
                lambda: ledger.submit_grant(spec),
            )
        except LedgerError as exc:
            raise _classify_write_failure(MutationKind.GRANT, exc, None) from exc
        logger.info(
            "permission_granted",
            extra={"permission_id": record.id, "owner": record.owner, "spender": record.spender},
        )
        return record

    # ------------------------------------------------------------------
    # spend
    # ------------------------------------------------------------------

    async def spend(
        self,
        permission_id: str,
        amount: int,
        now: datetime | None = None,
        requester: str | None = None,
    ) -> PermissionRecord:
        """
        Consume ``amount`` of a permission's allowance.

        If the ledger rejects the spend, the record is refetched and
        re-validated; if it still looks valid the spend is submitted exactly
        once more. A second rejection raises :class:`StaleRetryExhaustedError`.

        Args:
            permission_id: The permission to spend from.
            amount: Amount to consume, in base units.
            now: Instant to validate against. Defaults to the engine clock.
            requester: When given, must be the permission's spender.

        Returns:
            The ledger-confirmed record after the spend.
        """
        entry = await self._engine.current(permission_id)
        self._check_spend(entry, amount, now, requester)
        try:
            return await self._submit_spend(entry, amount)
        except LedgerRejectedError as first:
            logger.warning(
                "spend_rejected_refetching",
                extra={"permission_id": permission_id, "reason": first.reason},
            )
            entry = await self._refetch(permission_id)
            self._check_spend(entry, amount, now, requester)
            try:
                return await self._submit_spend(entry, amount)
            except LedgerRejectedError as second:
                entry = await self._refetch(permission_id)
                self._check_spend(entry, amount, now, requester)
                raise StaleRetryExhaustedError(permission_id, second.reason) from second
            except LedgerError as exc:
                raise _classify_write_failure(MutationKind.SPEND, exc, permission_id) from exc
        except LedgerError as exc:
            raise _classify_write_failure(MutationKind.SPEND, exc, permission_id) from exc

    def _check_spend(
        self,
        entry: CacheEntry,
        amount: int,
        now: datetime | None,
        requester: str | None,
    ) -> None:
        record = _baseline(entry)
        if requester is not None and requester != record.spender:
            raise PermissionValidationError(
                ValidationErrorKind.NOT_AUTHORIZED,
                f"Only the spender of permission '{record.id}' can spend from it.",
                permission_id=record.id,
            )
        pending = entry.sync.pending_mutation
        if pending is not None and pending.kind is MutationKind.REVOKE:
            raise PermissionValidationError(
                ValidationErrorKind.PERMISSION_REVOKED,
                f"Permission '{record.id}' is being revoked.",
                permission_id=record.id,
            )
        validate_spend(record, amount, now or self._engine.now())

    async def _submit_spend(self, entry: CacheEntry, amount: int) -> PermissionRecord:
        base = _baseline(entry)
        optimistic = base.model_copy(update={"spent": base.spent + amount})
        ledger = self._engine.ledger
        return await self._engine.run_mutation(
            MutationKind.SPEND,
            optimistic,
            lambda: ledger.submit_spend(base.id, amount),
            amount=amount,
        )

    # ------------------------------------------------------------------
    # revoke
    # ------------------------------------------------------------------

    async def revoke(
        self,
        permission_id: str,
        requester: str,
        now: datetime | None = None,
    ) -> PermissionRecord:
        """
        Revoke a permission.

        Revoking an already-revoked permission succeeds without touching the
        ledger. Revocation is allowed in every state, including after expiry.

        Returns:
            The revoked record.
        """
        entry = await self._engine.current(permission_id)
        record = _baseline(entry)
        try:
            validate_revoke(record, requester)
        except PermissionValidationError as exc:
            if exc.kind is ValidationErrorKind.ALREADY_REVOKED:
                return record
            raise

        ledger = self._engine.ledger
        optimistic = record.model_copy(
            update={"revoked": True, "revoked_at": now or self._engine.now()}
        )
        try:
            revoked = await self._engine.run_mutation(
                MutationKind.REVOKE,
                optimistic,
                lambda: ledger.submit_revoke(permission_id),
            )
        except LedgerRejectedError as exc:
            # Another writer may have revoked first; the ledger decides.
            refreshed = _baseline(await self._refetch(permission_id))
            try:
                validate_revoke(refreshed, requester)
            except PermissionValidationError as revalidated:
                if revalidated.kind is ValidationErrorKind.ALREADY_REVOKED:
                    return refreshed
                raise
            raise SubmissionFailedError(MutationKind.REVOKE.value, cause=exc, permission_id=permission_id) from exc
        except LedgerError as exc:
            raise _classify_write_failure(MutationKind.REVOKE, exc, permission_id) from exc
        logger.info("permission_revoked", extra={"permission_id": permission_id})
        return revoked

    # ------------------------------------------------------------------
    # extend
    # ------------------------------------------------------------------

    async def extend(
        self,
        permission_id: str,
        requester: str,
        new_expiry: datetime,
        now: datetime | None = None,
    ) -> PermissionRecord:
        """
        Move a permission's expiry later.

        Only legal while the permission is active. Backends that cannot
        extend on the ledger itself raise :class:`UnsupportedOperationError`;
        the cache is never extended locally on its own.

        Returns:
            The ledger-confirmed record with the new expiry.
        """
        capabilities = self._engine.ledger.capabilities
        if not capabilities.supports_extend:
            raise UnsupportedOperationError("extend", network=capabilities.network)

        at = now or self._engine.now()
        entry = await self._engine.current(permission_id)
        record = _baseline(entry)
        validate_extend(record, requester, new_expiry, at, self._policy)

        ledger = self._engine.ledger
        optimistic = record.model_copy(update={"expiry": new_expiry})
        try:
            return await self._engine.run_mutation(
                MutationKind.EXTEND,
                optimistic,
                lambda: ledger.submit_extend(permission_id, new_expiry),
                new_expiry=new_expiry,
            )
        except LedgerRejectedError as exc:
            refreshed = _baseline(await self._refetch(permission_id))
            validate_extend(refreshed, requester, new_expiry, self._engine.now(), self._policy)
            raise SubmissionFailedError(MutationKind.EXTEND.value, cause=exc, permission_id=permission_id) from exc
        except LedgerError as exc:
            raise _classify_write_failure(MutationKind.EXTEND, exc, permission_id) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _refetch(self, permission_id: str) -> CacheEntry:
        entry = await self._engine.refresh_record(permission_id)
        if entry is None:
            raise PermissionValidationError(
                ValidationErrorKind.PERMISSION_NOT_FOUND,
                f"Permission '{permission_id}' does not exist.",
                permission_id=permission_id,
            )
        return entry
