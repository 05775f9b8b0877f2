# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from expiry_permissions.cache import PermissionCache, build_cache
from expiry_permissions.config import ExpiryConfig
from expiry_permissions.errors import (
    ExpiryPermissionsError,
    PermissionValidationError,
    ValidationErrorKind,
)
from expiry_permissions.ledger import LedgerAdapter, build_ledger_adapter
from expiry_permissions.lifecycle import PermissionLifecycle
from expiry_permissions.messages import user_message
from expiry_permissions.record import derive_status
from expiry_permissions.sync import RecordsChangedCallback, SyncEngine
from expiry_permissions.types import (
    AccessScope,
    AttachedResource,
    Clock,
    GrantSpec,
    PermissionRecord,
    PermissionStatus,
    PermissionView,
    Signer,
    utcnow,
)

logger = logging.getLogger("expiry_permissions.service")


class IntentError(BaseModel, frozen=True):
    """
    Structured description of a failed intent.

    Attributes:
        category: ``'validation'``, ``'ledger'``, ``'lifecycle'``, ``'cache'``
            or ``'configuration'``.
        code: Stable machine-readable code (e.g. ``'INSUFFICIENT_ALLOWANCE'``).
        kind: The validation kind for validation failures, else None.
        message: Human-readable message suitable for display.
        detail: Technical message for logs and diagnostics.
        retryable: True if repeating the same intent unchanged could succeed.
        uncertain: True if the ledger may have applied the intent anyway;
            callers must refresh before repeating it.
    """

    category: str
    code: str
    kind: ValidationErrorKind | None = None
    message: str
    detail: str
    retryable: bool = False
    uncertain: bool = False

    @classmethod
    def from_exception(cls, error: ExpiryPermissionsError) -> IntentError:
        return cls(
            category=error.category,
            code=error.code,
            kind=error.kind if isinstance(error, PermissionValidationError) else None,
            message=user_message(error),
            detail=error.message,
            retryable=error.retryable,
            uncertain=error.code == "SUBMISSION_UNCERTAIN",
        )


class IntentResult(BaseModel, frozen=True):
    """
    Result of a UI intent. Exactly one of ``record`` and ``error`` is set.

    Attributes:
        ok: True if the intent was carried out (or was already in effect).
        record: The resulting ledger-confirmed record.
        status: ``record``'s status derived at the time the result was built.
        error: What went wrong, when ``ok`` is False.
    """

    ok: bool
    record: PermissionRecord | None = None
    status: PermissionStatus | None = None
    error: IntentError | None = None


class RefreshResult(BaseModel, frozen=True):
    """
    Result of a manual refresh.

    Attributes:
        ok: False if the ledger could not be read.
        skipped: True if a refresh was already running and this one did not start.
        permissions: The principal's permissions after the refresh.
        error: What went wrong, when ``ok`` is False.
    """

    ok: bool
    skipped: bool = False
    permissions: list[PermissionView] = []
    error: IntentError | None = None


class PermissionService:
    """
    Intent boundary for one connected principal.

    Every ``request_*`` method returns a result object and never raises a
    package error: failures come back as :class:`IntentError` values for the
    UI to display.

    Example::

        async with PermissionService("0xa11ce") as service:
            result = await service.request_grant(
                spender="0xb0b", amount=100, expiry=utcnow() + timedelta(hours=1)
            )
            if not result.ok:
                show(result.error.message)

    Parameters
    ----------
    principal:
        Address of the connected account.
    config:
        Package configuration. Defaults to a simulated, in-memory setup.
    ledger:
        Overrides the ledger adapter built from ``config``.
    cache:
        Overrides the cache built from ``config``.
    signer:
        Transaction signer, required when ``config`` selects the real ledger.
    clock:
        Wall-clock source.
    """

    def __init__(
        self,
        principal: str,
        config: ExpiryConfig | None = None,
        ledger: LedgerAdapter | None = None,
        cache: PermissionCache | None = None,
        signer: Signer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._principal = principal
        self._config = config or ExpiryConfig()
        self._ledger = ledger or build_ledger_adapter(
            self._config.ledger, account=principal, signer=signer, clock=clock
        )
        self._engine = SyncEngine(
            self._ledger,
            cache or build_cache(self._config.cache),
            config=self._config.sync,
            clock=clock,
        )
        self._lifecycle = PermissionLifecycle(self._engine, policy=self._config.policy)

    @property
    def principal(self) -> str:
        return self._principal

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def lifecycle(self) -> PermissionLifecycle:
        return self._lifecycle

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, poll: bool = True) -> None:
        """Load the cache and, unless ``poll`` is False, start background refresh."""
        await self._engine.start()
        if poll:
            self._engine.start_polling(self._principal)

    async def stop(self) -> None:
        """Stop refreshing, wait for submitted mutations to settle, and close the ledger."""
        await self._engine.stop()
        await self._ledger.aclose()

    async def __aenter__(self) -> PermissionService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def request_grant(
        self,
        spender: str,
        amount: int,
        expiry: datetime,
        access_scope: AccessScope = AccessScope.VIEW,
        attached_resource: AttachedResource | None = None,
    ) -> IntentResult:
        """Grant ``spender`` an allowance of ``amount`` until ``expiry``."""
        spec = GrantSpec(
            owner=self._principal,
            spender=spender,
            amount=amount,
            expiry=expiry,
            access_scope=access_scope,
            attached_resource=attached_resource,
        )
        return await self._run("grant", self._lifecycle.grant(spec))

    async def request_spend(self, permission_id: str, amount: int) -> IntentResult:
        """Spend ``amount`` from a permission granted to this principal."""
        return await self._run(
            "spend",
            self._lifecycle.spend(permission_id, amount, requester=self._principal),
        )

    async def request_revoke(self, permission_id: str) -> IntentResult:
        """Revoke a permission this principal owns. Safe to repeat."""
        return await self._run("revoke", self._lifecycle.revoke(permission_id, self._principal))

    async def request_extend(self, permission_id: str, new_expiry: datetime) -> IntentResult:
        """Move the expiry of an active permission this principal owns."""
        return await self._run(
            "extend",
            self._lifecycle.extend(permission_id, self._principal, new_expiry),
        )

    async def request_refresh(self) -> RefreshResult:
        """Refresh from the ledger now, unless a refresh is already running."""
        try:
            entries = await self._engine.tick(self._principal)
        except ExpiryPermissionsError as exc:
            return RefreshResult(
                ok=False,
                permissions=await self.permissions(),
                error=IntentError.from_exception(exc),
            )
        return RefreshResult(ok=True, skipped=entries is None, permissions=await self.permissions())

    async def _run(self, intent: str, transition: Awaitable[PermissionRecord]) -> IntentResult:
        try:
            record = await transition
        except PermissionValidationError as exc:
            logger.info("intent_invalid", extra={"intent": intent, "code": exc.code})
            return IntentResult(ok=False, error=IntentError.from_exception(exc))
        except ExpiryPermissionsError as exc:
            logger.warning("intent_failed", extra={"intent": intent, "code": exc.code})
            return IntentResult(ok=False, error=IntentError.from_exception(exc))
        return IntentResult(
            ok=True,
            record=record,
            status=derive_status(record, self._engine.now()),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def permissions(self, now: datetime | None = None) -> list[PermissionView]:
        """The principal's cached permissions, statuses derived at ``now``."""
        return await self._engine.views(self._principal, now)

    def on_records_changed(self, principal: str, callback: RecordsChangedCallback) -> Callable[[], None]:
        """
        Subscribe to reconciled changes for ``principal``.

        Returns:
            A function that removes the subscription.
        """
        return self._engine.subscribe(principal, callback)

    async def prune_history(self, older_than: timedelta = timedelta(0)) -> int:
        """Drop terminal permissions from the local cache. The ledger keeps them."""
        return await self._engine.prune(self._principal, older_than=older_than)

    async def export_history(self) -> dict[str, Any]:
        """Snapshot of the principal's cached permissions, ready for ``json.dumps``."""
        return await self._engine.export(self._principal)

    def network_info(self) -> dict[str, Any]:
        capabilities = self._ledger.capabilities
        return {
            "mode": self._config.ledger.mode,
            "network": capabilities.network,
            "persistent": capabilities.persistent,
            "supports_extend": capabilities.supports_extend,
            "poll_error": (
                error.code
                if (error := self._engine.last_poll_error(self._principal)) is not None
                else None
            ),
        }
