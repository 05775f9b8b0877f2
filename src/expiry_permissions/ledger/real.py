# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Ledger adapter for the on-chain ``expiry_x`` permission module.

Reads go through the fullnode REST ``/view`` endpoint. Mutations are built
as entry-function payloads and handed to an injected signer (the wallet or
identity collaborator), which returns a transaction hash; the adapter then
polls ``/transactions/by_hash/{hash}`` until the transaction is committed.
Once the signer has handed over a hash the transaction may have landed, so
any transport failure after that point is reported as a timeout (outcome
unknown), never as unreachable.

The module stores ``owner, spender, amount, spent, expiry_timestamp,
is_active`` per permission. ``is_active == false`` means revoked; expiry and
exhaustion are derived locally like everywhere else. The module has no
extend entry function, so this adapter does not support ``extend``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from pydantic import ValidationError

from expiry_permissions.config import RealLedgerConfig
from expiry_permissions.errors import (
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnreachableError,
    MalformedResponseError,
)
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.types import (
    GrantSpec,
    LedgerCapabilities,
    PermissionRecord,
    Signer,
    TransactionReceipt,
)

logger = logging.getLogger("expiry_permissions.ledger.real")

PERMISSION_NOT_EXISTS_MARKER = "PERMISSION_NOT_EXISTS"
GRANTED_EVENT_SUFFIX = "::PermissionGranted"

T = TypeVar("T")


def _to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


class RealLedgerAdapter(LedgerAdapter):
    """
    Aptos fullnode-backed ledger adapter.

    Parameters
    ----------
    config:
        Node URL, module coordinates and timeouts.
    signer:
        Async callback that signs and submits a transaction payload on behalf
        of the connected account and returns a :class:`SignerResult`.
    account:
        Address of the connected account. Used as the token recipient of spends.
    client:
        Optional pre-built ``httpx.AsyncClient``. When omitted, the adapter
        creates and owns one.
    """

    def __init__(
        self,
        config: RealLedgerConfig,
        signer: Signer,
        account: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._signer = signer
        self._account = account
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.node_url,
            timeout=config.request_timeout,
        )

    @property
    def capabilities(self) -> LedgerCapabilities:
        return LedgerCapabilities(
            network=self._config.network,
            persistent=True,
            supports_extend=False,
        )

    def _function(self, name: str) -> str:
        return f"{self._config.module_address}::{self._config.module_name}::{name}"

    # ─── Mutations ────────────────────────────────────────────────────────────

    async def submit_grant(self, spec: GrantSpec) -> TransactionReceipt:
        transaction = await self._submit(
            "grant_permission",
            [spec.spender, str(spec.amount), str(_to_timestamp(spec.expiry))],
        )

        async def read_granted() -> PermissionRecord:
            permission_id = self._granted_id_from_events(transaction)
            if permission_id is None:
                permission_id = await self._latest_id_for_owner(spec.owner)
            record = await self.fetch_record(permission_id)
            if record is None:
                raise MalformedResponseError(
                    f"Granted permission '{permission_id}' is not readable after confirmation."
                )
            return record

        record = await self._read_committed(transaction["hash"], read_granted)
        return TransactionReceipt(transaction_ref=transaction["hash"], confirmed_record=record)

    async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
        transaction = await self._submit(
            "spend_tokens",
            [permission_id, str(amount), self._account],
        )
        record = await self._read_committed(transaction["hash"], lambda: self.fetch_record(permission_id))
        return TransactionReceipt(transaction_ref=transaction["hash"], confirmed_record=record)

    async def submit_revoke(self, permission_id: str) -> TransactionReceipt:
        transaction = await self._submit("revoke_permission", [permission_id])
        record = await self._read_committed(transaction["hash"], lambda: self.fetch_record(permission_id))
        return TransactionReceipt(transaction_ref=transaction["hash"], confirmed_record=record)

    # ─── Reads ────────────────────────────────────────────────────────────────

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        ids = await self._view_ids("get_permissions_by_owner", owner)
        return await self._fetch_many(ids)

    async def fetch_records_by_spender(self, spender: str) -> list[PermissionRecord]:
        ids = await self._view_ids("get_permissions_by_spender", spender)
        return await self._fetch_many(ids)

    async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
        try:
            values = await self._view("get_permission", [permission_id])
        except LedgerRejectedError as exc:
            if PERMISSION_NOT_EXISTS_MARKER in exc.reason:
                return None
            raise
        return self._parse_permission(permission_id, values)

    async def total_permissions(self) -> int:
        values = await self._view("get_total_permissions", [])
        try:
            return int(values[0])
        except (IndexError, TypeError, ValueError) as exc:
            raise MalformedResponseError(f"Unexpected total permissions payload: {values!r}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ─── HTTP plumbing ────────────────────────────────────────────────────────

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise LedgerTimeoutError(f"{method} {url} timed out.") from exc
        except httpx.TransportError as exc:
            raise LedgerUnreachableError(f"{method} {url} failed: {exc}") from exc
        if response.status_code >= 500:
            raise LedgerUnreachableError(f"{method} {url} returned HTTP {response.status_code}.")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Ledger returned non-JSON body (HTTP {response.status_code})."
            ) from exc

    async def _view(self, name: str, arguments: list[str]) -> list[Any]:
        body = {"function": self._function(name), "type_arguments": [], "arguments": arguments}
        response = await self._request("POST", "/view", json=body)
        payload = self._json(response)
        if response.status_code >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise LedgerRejectedError(str(message or payload))
        if not isinstance(payload, list):
            raise MalformedResponseError(f"View '{name}' returned {type(payload).__name__}, expected list.")
        return payload

    async def _view_ids(self, name: str, address: str) -> list[str]:
        values = await self._view(name, [address])
        if not values or not isinstance(values[0], list):
            raise MalformedResponseError(f"View '{name}' returned {values!r}, expected [[ids]].")
        return [str(value) for value in values[0]]

    async def _fetch_many(self, ids: list[str]) -> list[PermissionRecord]:
        records = await asyncio.gather(*(self.fetch_record(permission_id) for permission_id in ids))
        return [record for record in records if record is not None]

    def _parse_permission(self, permission_id: str, values: list[Any]) -> PermissionRecord:
        if len(values) < 6 or not isinstance(values[5], bool):
            raise MalformedResponseError(
                f"Permission '{permission_id}' payload has unexpected shape: {values!r}"
            )
        owner, spender, amount, spent, expiry, is_active = values[:6]
        try:
            return PermissionRecord(
                id=permission_id,
                owner=str(owner),
                spender=str(spender),
                amount=int(amount),
                spent=int(spent),
                expiry=datetime.fromtimestamp(int(expiry), tz=timezone.utc),
                revoked=not is_active,
            )
        except (TypeError, ValueError, OverflowError, ValidationError) as exc:
            logger.error(
                "malformed_permission_payload",
                extra={"permission_id": permission_id, "payload": repr(values)},
            )
            raise MalformedResponseError(f"Permission '{permission_id}' payload is invalid: {exc}") from exc

    # ─── Transactions ─────────────────────────────────────────────────────────

    async def _submit(self, name: str, arguments: list[str]) -> dict[str, Any]:
        payload = {
            "function": self._function(name),
            "type_arguments": [],
            "arguments": arguments,
        }
        result = await self._signer(payload)
        if not result.success:
            raise LedgerRejectedError(result.reason or "Signer declined the transaction.")
        if not result.transaction_ref:
            raise MalformedResponseError("Signer reported success without a transaction reference.")
        try:
            transaction = await self._wait_for_transaction(result.transaction_ref)
        except LedgerUnreachableError as exc:
            raise LedgerTimeoutError(
                f"Transaction {result.transaction_ref} was submitted but its status "
                f"could not be read: {exc.message}"
            ) from exc
        if not transaction.get("success", False):
            raise LedgerRejectedError(str(transaction.get("vm_status", "Transaction failed.")))
        logger.info(
            "ledger_transaction_committed",
            extra={"function": name, "transaction_ref": result.transaction_ref},
        )
        transaction.setdefault("hash", result.transaction_ref)
        return transaction

    async def _read_committed(self, transaction_ref: str, read: Callable[[], Awaitable[T]]) -> T:
        """Read back the effect of a committed transaction."""
        try:
            return await read()
        except (LedgerUnreachableError, LedgerRejectedError) as exc:
            logger.warning(
                "committed_read_failed",
                extra={"transaction_ref": transaction_ref, "code": exc.code},
            )
            raise LedgerTimeoutError(
                f"Transaction {transaction_ref} committed but its result could not be read: {exc.message}"
            ) from exc

    async def _wait_for_transaction(self, transaction_hash: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.confirmation_timeout
        while True:
            response = await self._request("GET", f"/transactions/by_hash/{transaction_hash}")
            if response.status_code != 404:
                transaction = self._json(response)
                if response.status_code >= 400 or not isinstance(transaction, dict):
                    raise MalformedResponseError(
                        f"Unexpected transaction lookup response (HTTP {response.status_code})."
                    )
                if transaction.get("type") != "pending_transaction":
                    return transaction
            if loop.time() >= deadline:
                raise LedgerTimeoutError(
                    f"Transaction {transaction_hash} was not committed within "
                    f"{self._config.confirmation_timeout}s."
                )
            await asyncio.sleep(self._config.confirmation_poll_interval)

    @staticmethod
    def _granted_id_from_events(transaction: dict[str, Any]) -> str | None:
        for event in transaction.get("events", []) or []:
            if str(event.get("type", "")).endswith(GRANTED_EVENT_SUFFIX):
                permission_id = (event.get("data") or {}).get("permission_id")
                if permission_id is not None:
                    return str(permission_id)
        return None

    async def _latest_id_for_owner(self, owner: str) -> str:
        ids = await self._view_ids("get_permissions_by_owner", owner)
        try:
            return str(max(int(value) for value in ids))
        except ValueError as exc:
            raise MalformedResponseError(
                f"No permission ids readable for owner '{owner}' after grant."
            ) from exc
