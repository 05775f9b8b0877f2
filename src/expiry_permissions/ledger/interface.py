# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Abstract base class that every ledger backend must implement.

A ledger is the source of truth for permission records. Adapters translate
the calls below into whatever the backend speaks and classify every failure
into the :class:`~expiry_permissions.errors.LedgerError` taxonomy:

- ``LedgerUnreachableError``: the backend could not be contacted.
- ``LedgerTimeoutError``: the backend did not answer in time.
- ``LedgerRejectedError``: the backend refused the mutation; ``reason`` is
  passed through verbatim.
- ``MalformedResponseError``: the backend answered with something the
  adapter cannot interpret. Never coerced into a default value.

Adapters do not apply caller-side timeouts; the SyncEngine does.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from expiry_permissions.errors import UnsupportedOperationError
from expiry_permissions.types import (
    GrantSpec,
    LedgerCapabilities,
    PermissionRecord,
    TransactionReceipt,
)


class LedgerAdapter(ABC):
    """Contract for permission ledger backends."""

    @property
    @abstractmethod
    def capabilities(self) -> LedgerCapabilities:
        """The capability set of this backend."""
        ...

    # ─── Mutations ────────────────────────────────────────────────────────────

    @abstractmethod
    async def submit_grant(self, spec: GrantSpec) -> TransactionReceipt:
        """
        Record a new permission and wait for confirmation.

        The receipt must carry the confirmed record, including the
        ledger-assigned id.
        """
        ...

    @abstractmethod
    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        """Consume ``amount`` of the allowance and wait for confirmation."""
        ...

    @abstractmethod
    async def submit_revoke(self, permission_id: str) -> TransactionReceipt:
        """Revoke the permission and wait for confirmation."""
        ...

    async def submit_extend(self, permission_id: str, new_expiry: datetime) -> TransactionReceipt:
        """
        Move the expiry of a permission forward.

        Backends that advertise ``supports_extend`` must override this.
        """
        raise UnsupportedOperationError("extend", network=self.capabilities.network)

    # ─── Reads ────────────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        ...

    @abstractmethod
    async def fetch_records_by_spender(self, spender: str) -> list[PermissionRecord]:
        ...

    @abstractmethod
    async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
        """Return the record, or None if the ledger has no such permission."""
        ...

    async def aclose(self) -> None:
        """Release any resources held by the adapter."""
        return None
