# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Local simulated ledger for development.

Holds permission records in memory, optionally persisting them as a JSON
document after every confirmed transaction. It enforces the same rules as
the on-chain module and rejects violations with the module's abort codes,
so the lifecycle layer sees identical behaviour in both modes.

Artificial delays (``transaction_delay``, ``connection_delay``,
``revoke_delay``) are applied before a call takes the ledger lock, which lets
concurrent submissions overlap the way they do against a real network.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from expiry_permissions.config import SimulatedLedgerConfig
from expiry_permissions.errors import LedgerRejectedError, LedgerStorageError
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.persistence import quarantine_document, read_document, write_document
from expiry_permissions.types import (
    Clock,
    GrantSpec,
    LedgerCapabilities,
    PermissionRecord,
    TransactionReceipt,
    utcnow,
)

logger = logging.getLogger("expiry_permissions.ledger.simulated")

STATE_SCHEMA_VERSION = 1

# Abort codes of the on-chain permission module.
E_PERMISSION_NOT_EXISTS = "E_PERMISSION_NOT_EXISTS"
E_PERMISSION_EXPIRED = "E_PERMISSION_EXPIRED"
E_PERMISSION_REVOKED = "E_PERMISSION_REVOKED"
E_INSUFFICIENT_PERMISSION = "E_INSUFFICIENT_PERMISSION"
E_NOT_AUTHORIZED = "E_NOT_AUTHORIZED"
E_INVALID_EXPIRY = "E_INVALID_EXPIRY"
E_INVALID_AMOUNT = "E_INVALID_AMOUNT"
E_ALREADY_REVOKED = "E_ALREADY_REVOKED"


class SimulatedLedgerState(BaseModel):
    """Persisted document of the simulated ledger."""

    schema_version: int = STATE_SCHEMA_VERSION
    next_id: int = 1
    transaction_counter: int = 0
    permissions: list[PermissionRecord] = Field(default_factory=list)


class SimulatedLedgerAdapter(LedgerAdapter):
    """
    In-process ledger with optional JSON persistence.

    Parameters
    ----------
    config:
        Delays, persistence path and network name.
    clock:
        Source of "now" for expiry checks. Defaults to the wall clock.
    account:
        When set, the principal every transaction is signed by: spends are
        only accepted from the spender and revocations/extensions only from
        the owner. When None, authorisation is left to the caller.
    """

    def __init__(
        self,
        config: SimulatedLedgerConfig | None = None,
        clock: Clock = utcnow,
        account: str | None = None,
    ) -> None:
        self._config = config or SimulatedLedgerConfig()
        self._clock = clock
        self._account = account
        self._lock = asyncio.Lock()
        self._loaded = False
        self._records: dict[str, PermissionRecord] = {}
        self._next_id = 1
        self._transaction_counter = 0

    @property
    def capabilities(self) -> LedgerCapabilities:
        return LedgerCapabilities(
            network=self._config.network,
            persistent=self._config.state_path is not None,
            supports_extend=True,
        )

    # ─── Mutations ────────────────────────────────────────────────────────────

    async def submit_grant(self, spec: GrantSpec) -> TransactionReceipt:
        await self._delay(self._config.transaction_delay)
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            if self._account is not None and self._account != spec.owner:
                raise LedgerRejectedError(E_NOT_AUTHORIZED)
            if spec.amount <= 0:
                raise LedgerRejectedError(E_INVALID_AMOUNT)
            if spec.expiry <= now:
                raise LedgerRejectedError(E_INVALID_EXPIRY)

            permission_id = str(self._next_id)
            record = PermissionRecord(
                id=permission_id,
                owner=spec.owner,
                spender=spec.spender,
                amount=spec.amount,
                spent=0,
                expiry=spec.expiry,
                created_at=now,
                access_scope=spec.access_scope,
                attached_resource=spec.attached_resource,
            )
            return await self._commit(record, "grant", next_id=self._next_id + 1)

    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        await self._delay(self._config.transaction_delay)
        async with self._lock:
            await self._ensure_loaded()
            record = self._require(permission_id)
            if self._account is not None and self._account != record.spender:
                raise LedgerRejectedError(E_NOT_AUTHORIZED)
            if record.revoked:
                raise LedgerRejectedError(E_PERMISSION_REVOKED)
            if self._clock() >= record.expiry:
                raise LedgerRejectedError(E_PERMISSION_EXPIRED)
            if amount <= 0:
                raise LedgerRejectedError(E_INVALID_AMOUNT)
            if record.spent + amount > record.amount:
                raise LedgerRejectedError(E_INSUFFICIENT_PERMISSION)
            updated = record.model_copy(update={"spent": record.spent + amount})
            return await self._commit(updated, "spend")

    async def submit_revoke(self, permission_id: str) -> TransactionReceipt:
        await self._delay(self._config.revoke_delay)
        async with self._lock:
            await self._ensure_loaded()
            record = self._require(permission_id)
            if self._account is not None and self._account != record.owner:
                raise LedgerRejectedError(E_NOT_AUTHORIZED)
            if record.revoked:
                raise LedgerRejectedError(E_ALREADY_REVOKED)
            updated = record.model_copy(update={"revoked": True, "revoked_at": self._clock()})
            return await self._commit(updated, "revoke")

    async def submit_extend(self, permission_id: str, new_expiry: datetime) -> TransactionReceipt:
        await self._delay(self._config.transaction_delay)
        async with self._lock:
            await self._ensure_loaded()
            record = self._require(permission_id)
            if self._account is not None and self._account != record.owner:
                raise LedgerRejectedError(E_NOT_AUTHORIZED)
            if record.revoked:
                raise LedgerRejectedError(E_PERMISSION_REVOKED)
            if self._clock() >= record.expiry:
                raise LedgerRejectedError(E_PERMISSION_EXPIRED)
            if new_expiry <= record.expiry:
                raise LedgerRejectedError(E_INVALID_EXPIRY)
            updated = record.model_copy(update={"expiry": new_expiry})
            return await self._commit(updated, "extend")

    # ─── Reads ────────────────────────────────────────────────────────────────

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        await self._delay(self._config.connection_delay)
        async with self._lock:
            await self._ensure_loaded()
            return [record for record in self._records.values() if record.owner == owner]

    async def fetch_records_by_spender(self, spender: str) -> list[PermissionRecord]:
        await self._delay(self._config.connection_delay)
        async with self._lock:
            await self._ensure_loaded()
            return [record for record in self._records.values() if record.spender == spender]

    async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
        await self._delay(self._config.connection_delay)
        async with self._lock:
            await self._ensure_loaded()
            return self._records.get(permission_id)

    # ─── Development helpers ──────────────────────────────────────────────────

    async def total_permissions(self) -> int:
        """Return how many permissions have ever been granted on this ledger."""
        async with self._lock:
            await self._ensure_loaded()
            return len(self._records)

    async def status(self) -> dict[str, Any]:
        """Return a summary of the simulated network, for diagnostics."""
        total = await self.total_permissions()
        return {
            "connected": True,
            "network": self._config.network,
            "persistent": self._config.state_path is not None,
            "state_path": str(self._config.state_path) if self._config.state_path else None,
            "total_permissions": total,
            "mode": "simulated",
        }

    async def export_state(self) -> dict[str, Any]:
        """Return the full ledger state as a JSON-ready dict."""
        async with self._lock:
            await self._ensure_loaded()
            document = self._snapshot().model_dump(mode="json")
        document["exported_at"] = self._clock().isoformat()
        return document

    async def reset(self) -> None:
        """Erase every permission and restart id assignment."""
        async with self._lock:
            self._records.clear()
            self._next_id = 1
            self._transaction_counter = 0
            self._loaded = True
            await self._persist()
        logger.info("simulated_ledger_reset", extra={"network": self._config.network})

    # ─── Internals ────────────────────────────────────────────────────────────

    @staticmethod
    async def _delay(seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def _require(self, permission_id: str) -> PermissionRecord:
        record = self._records.get(permission_id)
        if record is None:
            raise LedgerRejectedError(E_PERMISSION_NOT_EXISTS)
        return record

    async def _commit(
        self,
        record: PermissionRecord,
        operation: str,
        next_id: int | None = None,
    ) -> TransactionReceipt:
        # Caller holds the lock. A transaction that cannot be persisted is undone.
        previous = self._records.get(record.id)
        previous_next_id = self._next_id
        self._records[record.id] = record
        if next_id is not None:
            self._next_id = next_id
        self._transaction_counter += 1
        try:
            await self._persist()
        except LedgerStorageError:
            if previous is None:
                self._records.pop(record.id, None)
            else:
                self._records[record.id] = previous
            self._next_id = previous_next_id
            self._transaction_counter -= 1
            raise
        transaction_ref = f"0xsim{self._transaction_counter:012x}"
        logger.debug(
            "simulated_transaction_confirmed",
            extra={"operation": operation, "permission_id": record.id, "transaction_ref": transaction_ref},
        )
        return TransactionReceipt(transaction_ref=transaction_ref, confirmed_record=record)

    def _snapshot(self) -> SimulatedLedgerState:
        return SimulatedLedgerState(
            next_id=self._next_id,
            transaction_counter=self._transaction_counter,
            permissions=list(self._records.values()),
        )

    async def _persist(self) -> None:
        path = self._config.state_path
        if path is None:
            return
        try:
            await write_document(path, self._snapshot().model_dump_json(indent=2))
        except OSError as exc:
            logger.error("simulated_ledger_persist_failed", extra={"path": str(path), "reason": str(exc)})
            raise LedgerStorageError(str(path), str(exc)) from exc

    async def _ensure_loaded(self) -> None:
        # Caller holds the lock.
        if self._loaded:
            return
        self._loaded = True
        path = self._config.state_path
        if path is None:
            return
        raw = await read_document(path)
        if raw is None:
            return
        try:
            state = SimulatedLedgerState.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as exc:
            await quarantine_document(path, reason=str(exc))
            return
        if state.schema_version != STATE_SCHEMA_VERSION:
            await quarantine_document(path, reason=f"schema_version {state.schema_version}")
            return
        self._records = {record.id: record for record in state.permissions}
        self._next_id = max(state.next_id, len(self._records) + 1)
        self._transaction_counter = state.transaction_counter
        logger.info(
            "simulated_ledger_loaded",
            extra={"path": str(path), "permissions": len(self._records)},
        )
