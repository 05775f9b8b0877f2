# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
SyncEngine: keeps the local cache eventually consistent with the ledger.

The engine coordinates three concerns:

1. Reads: every ledger fetch runs under a per-attempt timeout and is
   retried with capped exponential backoff on ``Timeout``/``Unreachable``.
2. Polling: one background loop per principal launches a refresh tick every
   ``poll_interval`` seconds. A tick that is still running when the next one
   is due causes that next tick to be skipped, never queued. Manual and
   post-mutation refreshes go through the same gate.
3. Mutations: the cache is updated optimistically before the ledger call,
   then replaced by the ledger-confirmed value or rolled back to the last
   confirmed value. Submissions are never retried here and never abandoned:
   they run in their own task and settle even if the caller stops waiting.

Ordering
--------
Every fetch and every mutation takes a stamp from one monotonically
increasing sequence. A fetched record is discarded when the cache already
holds a value confirmed after the fetch was issued, or when the record has a
pending mutation that started after the fetch was issued. That is what keeps
a slow poll from overwriting a just-confirmed revoke.

Usage::

    engine = SyncEngine(SimulatedLedgerAdapter(), MemoryCache())
    await engine.start()
    engine.start_polling("0xowner")
    engine.subscribe("0xowner", lambda principal, entries: render(entries))
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from expiry_permissions.cache.interface import PermissionCache
from expiry_permissions.config import SyncConfig
from expiry_permissions.errors import (
    ExpiryPermissionsError,
    LedgerError,
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnreachableError,
    MalformedResponseError,
    PermissionValidationError,
    SubmissionUncertainError,
    ValidationErrorKind,
)
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.record import build_view, derive_status
from expiry_permissions.types import (
    CacheEntry,
    Clock,
    MutationKind,
    PendingMutation,
    PermissionRecord,
    PermissionStatus,
    PermissionView,
    SyncState,
    TransactionReceipt,
    utcnow,
)

logger = logging.getLogger("expiry_permissions.sync")

T = TypeVar("T")

RecordsChangedCallback = Callable[[str, list[CacheEntry]], None]


class SyncEngine:
    """
    Reconciles the local cache, the ledger and in-flight mutations.

    Parameters
    ----------
    ledger:
        The ledger of record.
    cache:
        The local durable cache. The engine is its only writer.
    config:
        Polling interval, timeouts and read-retry policy.
    clock:
        Wall-clock source, used for timestamps and status derivation.
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        cache: PermissionCache,
        config: SyncConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._config = config or SyncConfig()
        self._clock = clock
        self._sequence = itertools.count(1)
        self._ticks_in_flight: set[str] = set()
        self._poll_tasks: dict[str, asyncio.Task[None]] = {}
        self._mutations: set[asyncio.Task[Any]] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._subscribers: dict[str, list[RecordsChangedCallback]] = defaultdict(list)
        self._last_poll_errors: dict[str, ExpiryPermissionsError] = {}
        self._pruned: set[str] = set()
        self._recovered_from_corruption = False

    @property
    def ledger(self) -> LedgerAdapter:
        return self._ledger

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    @property
    def recovered_from_corruption(self) -> bool:
        """True if the cache discarded corrupt persisted data on start."""
        return self._recovered_from_corruption

    def now(self) -> datetime:
        return self._clock()

    def _next_sequence(self) -> int:
        return next(self._sequence)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the cache. Must be awaited before any other call."""
        self._recovered_from_corruption = await self._cache.load()
        if self._recovered_from_corruption:
            logger.warning("cache_recovered_from_corruption")

    def start_polling(self, principal: str) -> None:
        """Start the background refresh loop for ``principal`` (idempotent)."""
        task = self._poll_tasks.get(principal)
        if task is not None and not task.done():
            return
        self._poll_tasks[principal] = asyncio.ensure_future(self._poll_loop(principal))

    async def stop_polling(self, principal: str) -> None:
        task = self._poll_tasks.pop(principal, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """
        Stop polling and background refreshes, then wait for submitted mutations.

        Submitted mutations are awaited, not cancelled, so that every one of
        them settles against the ledger.
        """
        for principal in list(self._poll_tasks):
            await self.stop_polling(principal)
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await asyncio.gather(*self._mutations, return_exceptions=True)

    def last_poll_error(self, principal: str) -> ExpiryPermissionsError | None:
        """The error of the most recent failed background tick, if it has not since succeeded."""
        return self._last_poll_errors.get(principal)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, principal: str, callback: RecordsChangedCallback) -> Callable[[], None]:
        """
        Call ``callback(principal, entries)`` after every reconciliation that
        changes a record ``principal`` is party to.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers[principal].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(principal, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def _notify(self, records: Iterable[PermissionRecord]) -> None:
        principals: set[str] = set()
        for record in records:
            principals.update((record.owner, record.spender))
        for principal in principals:
            callbacks = list(self._subscribers.get(principal, []))
            if not callbacks:
                continue
            entries = await self._cache.get_all_for_principal(principal)
            for callback in callbacks:
                try:
                    callback(principal, entries)
                except Exception:
                    logger.exception("subscriber_failed", extra={"principal": principal})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(call(), timeout=self._config.fetch_timeout)
            except asyncio.TimeoutError:
                error: LedgerError = LedgerTimeoutError(
                    f"{operation} did not complete within {self._config.fetch_timeout}s."
                )
            except (LedgerTimeoutError, LedgerUnreachableError) as exc:
                error = exc
            if attempt >= self._config.max_fetch_attempts:
                logger.warning(
                    "ledger_read_failed",
                    extra={"operation": operation, "attempts": attempt, "code": error.code},
                )
                raise error
            delay = min(self._config.backoff_cap, self._config.backoff_base * 2 ** (attempt - 1))
            logger.warning(
                "ledger_read_retry",
                extra={"operation": operation, "attempt": attempt, "delay": delay, "code": error.code},
            )
            await asyncio.sleep(delay)

    async def tick(self, principal: str) -> list[CacheEntry] | None:
        """
        Fetch every record ``principal`` owns or spends and reconcile it.

        Returns:
            The principal's cache entries after reconciliation, or None if a
            tick for this principal was already in flight and this one was
            skipped.
        """
        if principal in self._ticks_in_flight:
            logger.debug("tick_skipped", extra={"principal": principal})
            return None
        self._ticks_in_flight.add(principal)
        try:
            issued = self._next_sequence()
            owned = await self._read(
                "fetch_records_by_owner", lambda: self._ledger.fetch_records_by_owner(principal)
            )
            spending = await self._read(
                "fetch_records_by_spender", lambda: self._ledger.fetch_records_by_spender(principal)
            )
            fetched = {record.id: record for record in [*owned, *spending]}
            changed: list[PermissionRecord] = []
            for record in fetched.values():
                if await self._reconcile_fetched(record, issued):
                    changed.append(record)
            if changed:
                await self._notify(changed)
            return await self._cache.get_all_for_principal(principal)
        finally:
            self._ticks_in_flight.discard(principal)

    async def refresh_record(self, permission_id: str) -> CacheEntry | None:
        """
        Fetch one record from the ledger and reconcile it into the cache.

        Returns:
            The cache entry after reconciliation, or None if neither the
            ledger nor the cache knows the permission.
        """
        issued = self._next_sequence()
        record = await self._read("fetch_record", lambda: self._ledger.fetch_record(permission_id))
        if record is not None and await self._reconcile_fetched(record, issued):
            await self._notify([record])
        return await self._cache.get(permission_id)

    async def current(self, permission_id: str) -> CacheEntry:
        """
        Return the cached entry, fetching it from the ledger on a cache miss.

        Raises:
            PermissionValidationError: ``PERMISSION_NOT_FOUND`` if the ledger
                has no such permission either.
        """
        entry = await self._cache.get(permission_id)
        if entry is None:
            entry = await self.refresh_record(permission_id)
        if entry is None:
            raise PermissionValidationError(
                ValidationErrorKind.PERMISSION_NOT_FOUND,
                f"Permission '{permission_id}' does not exist.",
                permission_id=permission_id,
            )
        return entry

    async def _reconcile_fetched(self, record: PermissionRecord, issued: int) -> bool:
        """Merge a fetched record; returns True if the displayed record changed."""
        if record.id in self._pruned:
            return False
        now = self._clock()
        outcome = {"changed": False}

        def decide(entry: CacheEntry | None) -> CacheEntry | None:
            outcome["changed"] = False
            if entry is None:
                outcome["changed"] = True
                return CacheEntry(
                    record=record,
                    sync=SyncState(
                        last_confirmed_from_ledger=now,
                        confirmed_sequence=issued,
                        confirmed=record,
                    ),
                )
            sync = entry.sync
            pending = sync.pending_mutation
            if issued <= sync.confirmed_sequence or (pending is not None and pending.sequence > issued):
                logger.debug(
                    "stale_fetch_discarded",
                    extra={"permission_id": record.id, "issued": issued, "confirmed": sync.confirmed_sequence},
                )
                return None
            baseline = sync.model_copy(
                update={
                    "last_confirmed_from_ledger": now,
                    "confirmed_sequence": issued,
                    "confirmed": record,
                }
            )
            if pending is not None:
                # The optimistic value stays on display until the mutation settles.
                return entry.model_copy(update={"sync": baseline})
            outcome["changed"] = entry.record != record
            return entry.model_copy(update={"record": record, "sync": baseline})

        await self._modify(record.id, decide)
        return outcome["changed"]

    # ------------------------------------------------------------------
    # Cache compare-and-set
    # ------------------------------------------------------------------

    async def _modify(
        self,
        permission_id: str,
        decide: Callable[[CacheEntry | None], CacheEntry | None],
    ) -> CacheEntry | None:
        """
        Atomic read-modify-write of one cache entry.

        ``decide`` receives the current entry and returns the replacement, or
        None to leave the entry alone. It is re-run if another writer changed
        the entry in between.
        """
        while True:
            current = await self._cache.get(permission_id)
            replacement = decide(current)
            if replacement is None:
                return None
            expected = None if current is None else current.revision
            stored = await self._cache.upsert(replacement, expected_revision=expected)
            if stored is not None:
                return stored
            logger.debug("cache_write_conflict", extra={"permission_id": permission_id})

    async def _remove_if(
        self,
        permission_id: str,
        predicate: Callable[[CacheEntry], bool],
    ) -> CacheEntry | None:
        while True:
            current = await self._cache.get(permission_id)
            if current is None or not predicate(current):
                return None
            if await self._cache.remove(permission_id, expected_revision=current.revision):
                return current

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def run_mutation(
        self,
        kind: MutationKind,
        optimistic: PermissionRecord,
        submit: Callable[[], Awaitable[TransactionReceipt]],
        amount: int | None = None,
        new_expiry: datetime | None = None,
    ) -> PermissionRecord:
        """
        Apply ``optimistic`` to the cache, submit the mutation, and settle it.

        On confirmation the cache holds the ledger's record; on any package
        error the optimistic write is rolled back and the error re-raised
        unchanged. An error that leaves the outcome unknown also schedules a
        refetch. If the ledger does not acknowledge within
        ``submit_timeout`` the submission keeps running in the background and
        settles when it resolves, while the caller gets
        :class:`SubmissionUncertainError`. Cancelling the caller never cancels
        the submission.

        Returns:
            The ledger-confirmed record.
        """
        mutation = await self._apply_optimistic(kind, optimistic, amount, new_expiry)
        settlement = asyncio.ensure_future(self._settle(optimistic, mutation, submit))
        self._mutations.add(settlement)
        settlement.add_done_callback(self._mutation_done)
        try:
            return await asyncio.wait_for(
                asyncio.shield(settlement), timeout=self._config.submit_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "submission_unacknowledged",
                extra={"kind": kind.value, "permission_id": optimistic.id, "timeout": self._config.submit_timeout},
            )
            raise SubmissionUncertainError(
                kind.value,
                permission_id=optimistic.id,
                cause=LedgerTimeoutError(
                    f"No acknowledgment within {self._config.submit_timeout}s; "
                    "the submission is still running."
                ),
            ) from None

    async def _apply_optimistic(
        self,
        kind: MutationKind,
        optimistic: PermissionRecord,
        amount: int | None,
        new_expiry: datetime | None,
    ) -> PendingMutation:
        sequence = self._next_sequence()
        submitted_at = self._clock()
        created: dict[str, PendingMutation] = {}

        def decide(entry: CacheEntry | None) -> CacheEntry:
            sync = entry.sync if entry is not None else SyncState()
            version = sync.local_optimistic_version + 1
            mutation = PendingMutation(
                kind=kind,
                sequence=sequence,
                version=version,
                submitted_at=submitted_at,
                amount=amount,
                new_expiry=new_expiry,
            )
            created["mutation"] = mutation
            return CacheEntry(
                record=optimistic,
                sync=sync.model_copy(
                    update={"pending_mutation": mutation, "local_optimistic_version": version}
                ),
                revision=entry.revision if entry is not None else 0,
            )

        await self._modify(optimistic.id, decide)
        await self._notify([optimistic])
        return created["mutation"]

    async def _settle(
        self,
        optimistic: PermissionRecord,
        mutation: PendingMutation,
        submit: Callable[[], Awaitable[TransactionReceipt]],
    ) -> PermissionRecord:
        permission_id = optimistic.id
        try:
            receipt = await submit()
            record = receipt.confirmed_record
            if record is None:
                record = await self._read_confirmed(permission_id, mutation)
        except ExpiryPermissionsError as exc:
            await self._rollback(permission_id, mutation)
            logger.warning(
                "mutation_rolled_back",
                extra={"kind": mutation.kind.value, "permission_id": permission_id, "code": exc.code},
            )
            if isinstance(exc, (LedgerTimeoutError, MalformedResponseError)):
                # The mutation may have landed; pull the ledger's view of it.
                if mutation.kind is MutationKind.GRANT:
                    self._launch_tick(optimistic.owner)
                else:
                    self._spawn(self._refresh_quietly(permission_id))
            raise
        await self._confirm(permission_id, mutation, record)
        logger.info(
            "mutation_confirmed",
            extra={
                "kind": mutation.kind.value,
                "permission_id": record.id,
                "transaction_ref": receipt.transaction_ref,
            },
        )
        return record

    async def _read_confirmed(self, permission_id: str, mutation: PendingMutation) -> PermissionRecord:
        # The ledger acknowledged the mutation, so a failed read leaves its outcome unknown.
        try:
            record = await self._read("fetch_record", lambda: self._ledger.fetch_record(permission_id))
        except (LedgerUnreachableError, LedgerRejectedError) as exc:
            raise LedgerTimeoutError(
                f"Ledger confirmed {mutation.kind.value} of '{permission_id}' "
                f"but the record could not be read: {exc.message}"
            ) from exc
        if record is None:
            raise MalformedResponseError(
                f"Ledger confirmed {mutation.kind.value} of '{permission_id}' but has no such record."
            )
        return record

    async def _confirm(
        self,
        permission_id: str,
        mutation: PendingMutation,
        record: PermissionRecord,
    ) -> None:
        now = self._clock()
        if record.id != permission_id:
            # A provisional grant entry is replaced by the ledger-assigned id.
            await self._remove_if(
                permission_id,
                lambda entry: entry.sync.pending_mutation is not None
                and entry.sync.pending_mutation.version == mutation.version,
            )
        self._pruned.discard(record.id)
        sequence = self._next_sequence()

        def decide(entry: CacheEntry | None) -> CacheEntry:
            sync = entry.sync if entry is not None else SyncState()
            baseline = sync.model_copy(
                update={
                    "last_confirmed_from_ledger": now,
                    "confirmed_sequence": sequence,
                    "confirmed": record,
                }
            )
            pending = sync.pending_mutation
            if entry is not None and pending is not None and pending.version != mutation.version:
                # A newer optimistic write is still in flight; it settles on its own.
                return entry.model_copy(update={"sync": baseline})
            return CacheEntry(
                record=record,
                sync=baseline.model_copy(update={"pending_mutation": None}),
                revision=entry.revision if entry is not None else 0,
            )

        await self._modify(record.id, decide)
        await self._notify([record])

    async def _rollback(self, permission_id: str, mutation: PendingMutation) -> None:
        def owns_entry(entry: CacheEntry) -> bool:
            pending = entry.sync.pending_mutation
            return pending is not None and pending.version == mutation.version

        removed = await self._remove_if(
            permission_id, lambda entry: owns_entry(entry) and entry.sync.confirmed is None
        )
        if removed is not None:
            await self._notify([removed.record])
            return

        def decide(entry: CacheEntry | None) -> CacheEntry | None:
            if entry is None or not owns_entry(entry) or entry.sync.confirmed is None:
                return None
            return entry.model_copy(
                update={
                    "record": entry.sync.confirmed,
                    "sync": entry.sync.model_copy(update={"pending_mutation": None}),
                }
            )

        stored = await self._modify(permission_id, decide)
        if stored is not None:
            await self._notify([stored.record])

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _poll_loop(self, principal: str) -> None:
        while True:
            self._launch_tick(principal)
            await asyncio.sleep(self._config.poll_interval)

    def _launch_tick(self, principal: str) -> None:
        if principal in self._ticks_in_flight:
            logger.debug("tick_skipped", extra={"principal": principal})
            return
        self._spawn(self._background_tick(principal))

    async def _background_tick(self, principal: str) -> None:
        try:
            await self.tick(principal)
        except ExpiryPermissionsError as exc:
            self._last_poll_errors[principal] = exc
            logger.warning("poll_failed", extra={"principal": principal, "code": exc.code})
        else:
            self._last_poll_errors.pop(principal, None)

    async def _refresh_quietly(self, permission_id: str) -> None:
        try:
            await self.refresh_record(permission_id)
        except ExpiryPermissionsError as exc:
            logger.warning("refresh_failed", extra={"permission_id": permission_id, "code": exc.code})

    def _spawn(self, coroutine: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _mutation_done(self, task: asyncio.Task[Any]) -> None:
        self._mutations.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ExpiryPermissionsError):
            logger.error("mutation_task_failed", exc_info=exc)

    # ------------------------------------------------------------------
    # Views, prune and export
    # ------------------------------------------------------------------

    async def views(self, principal: str, now: datetime | None = None) -> list[PermissionView]:
        """Return the principal's cached permissions with statuses derived at ``now``."""
        as_of = now or self._clock()
        entries = await self._cache.get_all_for_principal(principal)
        views = [build_view(entry, as_of) for entry in entries]
        return sorted(views, key=lambda view: (view.record.expiry, view.record.id))

    async def prune(
        self,
        principal: str,
        now: datetime | None = None,
        older_than: timedelta = timedelta(0),
    ) -> int:
        """
        Remove terminal records from the local cache.

        Only records that are expired, revoked or fully spent, have no
        pending mutation, and reached that state at least ``older_than`` ago
        are removed. The ledger is never touched, and pruned records are not
        re-added by later polls in this session.

        Returns:
            The number of records removed.
        """
        as_of = now or self._clock()
        removed: list[PermissionRecord] = []
        for entry in await self._cache.get_all_for_principal(principal):
            if entry.pending:
                continue
            status = derive_status(entry.record, as_of)
            if status is PermissionStatus.ACTIVE:
                continue
            since = _terminal_since(entry, status)
            if since is not None and as_of - since < older_than:
                continue
            if await self._cache.remove(entry.id, expected_revision=entry.revision):
                self._pruned.add(entry.id)
                removed.append(entry.record)
        if removed:
            logger.info("cache_pruned", extra={"principal": principal, "removed": len(removed)})
            await self._notify(removed)
        return len(removed)

    async def export(self, principal: str, now: datetime | None = None) -> dict[str, Any]:
        """Return a JSON-ready snapshot of the principal's cached permissions."""
        as_of = now or self._clock()
        views = await self.views(principal, as_of)
        return {
            "principal": principal,
            "exported_at": as_of.isoformat(),
            "network": self._ledger.capabilities.network,
            "permissions": [view.model_dump(mode="json") for view in views],
        }


def _terminal_since(entry: CacheEntry, status: PermissionStatus) -> datetime | None:
    record = entry.record
    if status is PermissionStatus.REVOKED:
        return record.revoked_at or entry.sync.last_confirmed_from_ledger
    if status is PermissionStatus.EXPIRED:
        return record.expiry
    return entry.sync.last_confirmed_from_ledger
