# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Shared fixtures and ledger test doubles for expiry-permissions tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from expiry_permissions.cache.memory import MemoryCache
from expiry_permissions.config import SyncConfig
from expiry_permissions.errors import LedgerRejectedError, LedgerUnreachableError
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.ledger.simulated import SimulatedLedgerAdapter
from expiry_permissions.lifecycle import PermissionLifecycle
from expiry_permissions.sync import SyncEngine
from expiry_permissions.types import (
    GrantSpec,
    LedgerCapabilities,
    PermissionRecord,
    TransactionReceipt,
)

OWNER = "0xa11ce"
SPENDER = "0xb0b"
OTHER = "0xc4a1"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; call it to read the current instant."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class DelegatingLedger(LedgerAdapter):
    """Forwards every call to ``inner``; subclasses override what they need to break."""

    def __init__(self, inner: LedgerAdapter) -> None:
        self.inner = inner
        self.calls: list[str] = []

    @property
    def capabilities(self) -> LedgerCapabilities:
        return self.inner.capabilities

    async def submit_grant(self, spec: GrantSpec) -> TransactionReceipt:
        self.calls.append("submit_grant")
        return await self.inner.submit_grant(spec)

    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        self.calls.append("submit_spend")
        return await self.inner.submit_spend(permission_id, amount)

    async def submit_revoke(self, permission_id: str) -> TransactionReceipt:
        self.calls.append("submit_revoke")
        return await self.inner.submit_revoke(permission_id)

    async def submit_extend(self, permission_id: str, new_expiry: datetime) -> TransactionReceipt:
        self.calls.append("submit_extend")
        return await self.inner.submit_extend(permission_id, new_expiry)

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        self.calls.append("fetch_records_by_owner")
        return await self.inner.fetch_records_by_owner(owner)

    async def fetch_records_by_spender(self, spender: str) -> list[PermissionRecord]:
        self.calls.append("fetch_records_by_spender")
        return await self.inner.fetch_records_by_spender(spender)

    async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
        self.calls.append("fetch_record")
        return await self.inner.fetch_record(permission_id)


class GatedLedger(DelegatingLedger):
    """
    Owner fetches read the ledger immediately but only return once ``gate`` is set.

    ``fetched`` is set as soon as the snapshot has been taken, so a test can
    change the ledger while a stale answer is held back.
    """

    def __init__(self, inner: LedgerAdapter) -> None:
        super().__init__(inner)
        self.gate = asyncio.Event()
        self.fetched = asyncio.Event()

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        snapshot = await self.inner.fetch_records_by_owner(owner)
        self.fetched.set()
        await self.gate.wait()
        return snapshot


class RejectingLedger(DelegatingLedger):
    """Rejects the first ``rejections`` spends with ``reason``, then delegates."""

    def __init__(self, inner: LedgerAdapter, rejections: int, reason: str = "E_CONFLICT") -> None:
        super().__init__(inner)
        self.rejections = rejections
        self.reason = reason

    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        self.calls.append("submit_spend")
        if self.rejections > 0:
            self.rejections -= 1
            raise LedgerRejectedError(self.reason)
        return await self.inner.submit_spend(permission_id, amount)


class UnreachableLedger(DelegatingLedger):
    """Every call fails as if the network were down."""

    async def submit_grant(self, spec: GrantSpec) -> TransactionReceipt:
        raise LedgerUnreachableError()

    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        raise LedgerUnreachableError()

    async def submit_revoke(self, permission_id: str) -> TransactionReceipt:
        raise LedgerUnreachableError()

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        raise LedgerUnreachableError()

    async def fetch_records_by_spender(self, spender: str) -> list[PermissionRecord]:
        raise LedgerUnreachableError()

    async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
        raise LedgerUnreachableError()


class NoExtendLedger(DelegatingLedger):
    """A ledger that, like the on-chain module, cannot extend."""

    @property
    def capabilities(self) -> LedgerCapabilities:
        return LedgerCapabilities(network="no-extend", persistent=True, supports_extend=False)

    async def submit_extend(self, permission_id: str, new_expiry: datetime) -> TransactionReceipt:
        return await LedgerAdapter.submit_extend(self, permission_id, new_expiry)


def make_record(**overrides: object) -> PermissionRecord:
    """A 100-unit permission from OWNER to SPENDER expiring an hour after T0."""
    fields: dict[str, object] = {
        "id": "1",
        "owner": OWNER,
        "spender": SPENDER,
        "amount": 100,
        "spent": 0,
        "expiry": T0 + timedelta(hours=1),
        "created_at": T0,
    }
    fields.update(overrides)
    return PermissionRecord(**fields)


def grant_spec(**overrides: object) -> GrantSpec:
    fields: dict[str, object] = {
        "owner": OWNER,
        "spender": SPENDER,
        "amount": 100,
        "expiry": T0 + timedelta(hours=1),
    }
    fields.update(overrides)
    return GrantSpec(**fields)


FAST_SYNC = SyncConfig(
    poll_interval=0.05,
    fetch_timeout=1.0,
    submit_timeout=1.0,
    backoff_base=0.0,
    backoff_cap=0.0,
    max_fetch_attempts=3,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> SimulatedLedgerAdapter:
    """An in-memory simulated ledger that leaves authorisation to the caller."""
    return SimulatedLedgerAdapter(clock=clock)


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def engine(ledger: SimulatedLedgerAdapter, cache: MemoryCache, clock: FakeClock) -> SyncEngine:
    return SyncEngine(ledger, cache, config=FAST_SYNC, clock=clock)


@pytest.fixture
def lifecycle(engine: SyncEngine) -> PermissionLifecycle:
    return PermissionLifecycle(engine)
