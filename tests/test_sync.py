# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Tests for SyncEngine: reads, polling, reconciliation, optimistic writes, prune and export."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import (
    FAST_SYNC,
    OWNER,
    SPENDER,
    T0,
    DelegatingLedger,
    FakeClock,
    GatedLedger,
    UnreachableLedger,
    grant_spec,
    make_record,
)
from expiry_permissions.cache.file import FileCache
from expiry_permissions.cache.memory import MemoryCache
from expiry_permissions.config import SimulatedLedgerConfig, SyncConfig
from expiry_permissions.errors import (
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnreachableError,
    PermissionValidationError,
    SubmissionUncertainError,
    UnsupportedOperationError,
    ValidationErrorKind,
)
from expiry_permissions.ledger.simulated import SimulatedLedgerAdapter
from expiry_permissions.sync import SyncEngine
from expiry_permissions.types import (
    CacheEntry,
    MutationKind,
    PermissionRecord,
    PermissionStatus,
    TransactionReceipt,
)


class FlakyLedger(DelegatingLedger):
    """Owner fetches fail as unreachable ``failures`` times before succeeding."""

    def __init__(self, inner: SimulatedLedgerAdapter, failures: int) -> None:
        super().__init__(inner)
        self.failures = failures

    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        self.calls.append("fetch_records_by_owner")
        if self.failures > 0:
            self.failures -= 1
            raise LedgerUnreachableError()
        return await self.inner.fetch_records_by_owner(owner)


class HangingLedger(DelegatingLedger):
    async def fetch_records_by_owner(self, owner: str) -> list[PermissionRecord]:
        self.calls.append("fetch_records_by_owner")
        await asyncio.sleep(10)
        return []


# ---------------------------------------------------------------------------
# TestTick
# ---------------------------------------------------------------------------


class TestTick:
    def test_tick_mirrors_ledger_into_cache(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter, cache: MemoryCache
    ) -> None:
        async def scenario() -> list[CacheEntry] | None:
            await ledger.submit_grant(grant_spec())
            await engine.start()
            return await engine.tick(OWNER)

        entries = asyncio.run(scenario())
        assert [e.id for e in entries] == ["1"]
        assert entries[0].sync.confirmed == entries[0].record
        assert entries[0].sync.last_confirmed_from_ledger == T0
        assert entries[0].pending is False

    def test_tick_covers_spender_side(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def scenario() -> list[CacheEntry] | None:
            await ledger.submit_grant(grant_spec())
            return await engine.tick(SPENDER)

        assert [e.id for e in asyncio.run(scenario())] == ["1"]

    def test_overlapping_tick_is_skipped(self, ledger: SimulatedLedgerAdapter, clock: FakeClock) -> None:
        async def scenario() -> tuple[list[CacheEntry] | None, list[CacheEntry] | None, int]:
            gated = GatedLedger(ledger)
            engine = SyncEngine(gated, MemoryCache(), config=FAST_SYNC, clock=clock)
            await ledger.submit_grant(grant_spec())
            first = asyncio.ensure_future(engine.tick(OWNER))
            await gated.fetched.wait()
            skipped = await engine.tick(OWNER)
            gated.gate.set()
            return skipped, await first, gated.calls.count("fetch_records_by_spender")

        skipped, completed, spender_fetches = asyncio.run(scenario())
        assert skipped is None
        assert completed is not None and len(completed) == 1
        assert spender_fetches == 1

    def test_changed_record_replaces_cached_value(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter
    ) -> None:
        async def scenario() -> CacheEntry | None:
            await ledger.submit_grant(grant_spec())
            await engine.tick(OWNER)
            await ledger.submit_spend("1", 40)
            await engine.tick(OWNER)
            return await engine.cache.get("1")

        current = asyncio.run(scenario())
        assert current.record.spent == 40
        assert current.sync.confirmed.spent == 40

    def test_current_fetches_on_cache_miss(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def scenario() -> CacheEntry:
            await ledger.submit_grant(grant_spec())
            return await engine.current("1")

        assert asyncio.run(scenario()).record.amount == 100

    def test_current_unknown_permission(self, engine: SyncEngine) -> None:
        with pytest.raises(PermissionValidationError) as exc_info:
            asyncio.run(engine.current("404"))
        assert exc_info.value.kind is ValidationErrorKind.PERMISSION_NOT_FOUND


# ---------------------------------------------------------------------------
# TestReadRetry
# ---------------------------------------------------------------------------


class TestReadRetry:
    def test_unreachable_reads_are_retried(self, ledger: SimulatedLedgerAdapter, clock: FakeClock) -> None:
        flaky = FlakyLedger(ledger, failures=2)
        engine = SyncEngine(flaky, MemoryCache(), config=FAST_SYNC, clock=clock)

        async def scenario() -> list[CacheEntry] | None:
            await ledger.submit_grant(grant_spec())
            return await engine.tick(OWNER)

        assert len(asyncio.run(scenario())) == 1
        assert flaky.calls.count("fetch_records_by_owner") == 3

    def test_retries_are_bounded(self, ledger: SimulatedLedgerAdapter, clock: FakeClock) -> None:
        flaky = FlakyLedger(ledger, failures=10)
        engine = SyncEngine(flaky, MemoryCache(), config=FAST_SYNC, clock=clock)

        with pytest.raises(LedgerUnreachableError):
            asyncio.run(engine.tick(OWNER))
        assert flaky.calls.count("fetch_records_by_owner") == FAST_SYNC.max_fetch_attempts

    def test_slow_read_times_out(self, ledger: SimulatedLedgerAdapter, clock: FakeClock) -> None:
        config = SyncConfig(fetch_timeout=0.02, max_fetch_attempts=2, backoff_base=0.0)
        engine = SyncEngine(HangingLedger(ledger), MemoryCache(), config=config, clock=clock)

        with pytest.raises(LedgerTimeoutError):
            asyncio.run(engine.tick(OWNER))

    def test_rejected_reads_are_not_retried(self, clock: FakeClock) -> None:
        class RejectingReads(DelegatingLedger):
            async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
                self.calls.append("fetch_record")
                raise LedgerRejectedError("E_MODULE_NOT_PUBLISHED")

        ledger = RejectingReads(SimulatedLedgerAdapter(clock=clock))
        engine = SyncEngine(ledger, MemoryCache(), config=FAST_SYNC, clock=clock)
        with pytest.raises(LedgerRejectedError):
            asyncio.run(engine.refresh_record("1"))
        assert ledger.calls == ["fetch_record"]


# ---------------------------------------------------------------------------
# TestStaleFetch
# ---------------------------------------------------------------------------


class TestStaleFetch:
    def test_fetch_issued_before_confirmed_mutation_is_discarded(
        self, ledger: SimulatedLedgerAdapter, clock: FakeClock
    ) -> None:
        async def scenario() -> CacheEntry | None:
            gated = GatedLedger(ledger)
            engine = SyncEngine(gated, MemoryCache(), config=FAST_SYNC, clock=clock)
            await ledger.submit_grant(grant_spec())
            await engine.refresh_record("1")
            poll = asyncio.ensure_future(engine.tick(OWNER))
            await gated.fetched.wait()
            entry = await engine.current("1")
            revoked = entry.record.model_copy(update={"revoked": True, "revoked_at": T0})
            await engine.run_mutation(MutationKind.REVOKE, revoked, lambda: ledger.submit_revoke("1"))
            gated.gate.set()
            await poll
            return await engine.cache.get("1")

        current = asyncio.run(scenario())
        assert current.record.revoked is True
        assert current.sync.confirmed.revoked is True

    def test_fetch_during_older_pending_mutation_updates_baseline_only(self, clock: FakeClock) -> None:
        ledger = SimulatedLedgerAdapter(SimulatedLedgerConfig(transaction_delay=0.05), clock=clock)
        engine = SyncEngine(ledger, MemoryCache(), config=FAST_SYNC, clock=clock)

        async def scenario() -> tuple[CacheEntry, CacheEntry]:
            await ledger.submit_grant(grant_spec())
            await engine.refresh_record("1")
            entry = await engine.current("1")
            optimistic = entry.record.model_copy(update={"spent": 60})
            spend = asyncio.ensure_future(
                engine.run_mutation(
                    MutationKind.SPEND, optimistic, lambda: ledger.submit_spend("1", 60), amount=60
                )
            )
            await asyncio.sleep(0)
            await engine.tick(OWNER)
            during = await engine.cache.get("1")
            await spend
            return during, await engine.cache.get("1")

        during, after = asyncio.run(scenario())
        assert during.pending is True
        assert during.record.spent == 60
        assert during.sync.confirmed.spent == 0
        assert after.pending is False
        assert after.record.spent == 60


# ---------------------------------------------------------------------------
# TestOptimisticWrites
# ---------------------------------------------------------------------------


class TestOptimisticWrites:
    def test_rejection_rolls_back_to_confirmed(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter
    ) -> None:
        async def submit() -> None:
            raise LedgerRejectedError("E_INSUFFICIENT_PERMISSION")

        async def scenario() -> CacheEntry | None:
            await ledger.submit_grant(grant_spec())
            entry = await engine.current("1")
            optimistic = entry.record.model_copy(update={"spent": 80})
            with pytest.raises(LedgerRejectedError):
                await engine.run_mutation(MutationKind.SPEND, optimistic, submit, amount=80)
            return await engine.cache.get("1")

        current = asyncio.run(scenario())
        assert current.record.spent == 0
        assert current.pending is False
        assert current.sync.local_optimistic_version == 1

    def test_failed_provisional_grant_is_removed(self, engine: SyncEngine, cache: MemoryCache) -> None:
        async def submit() -> None:
            raise LedgerUnreachableError()

        async def scenario() -> list[CacheEntry]:
            provisional = make_record(id="local-abc")
            with pytest.raises(LedgerUnreachableError):
                await engine.run_mutation(MutationKind.GRANT, provisional, submit)
            return await cache.all()

        assert asyncio.run(scenario()) == []

    def test_optimistic_value_is_visible_while_pending(self, clock: FakeClock) -> None:
        ledger = SimulatedLedgerAdapter(SimulatedLedgerConfig(transaction_delay=0.05), clock=clock)
        engine = SyncEngine(ledger, MemoryCache(), config=FAST_SYNC, clock=clock)

        async def scenario() -> tuple[list, list]:
            provisional = make_record(id="local-abc")
            grant = asyncio.ensure_future(
                engine.run_mutation(MutationKind.GRANT, provisional, lambda: ledger.submit_grant(grant_spec()))
            )
            await asyncio.sleep(0)
            during = await engine.views(OWNER)
            await grant
            return during, await engine.views(OWNER)

        during, after = asyncio.run(scenario())
        assert [(v.record.id, v.pending) for v in during] == [("local-abc", True)]
        assert [(v.record.id, v.pending) for v in after] == [("1", False)]

    def test_unacknowledged_submission_settles_in_background(self, clock: FakeClock) -> None:
        ledger = SimulatedLedgerAdapter(SimulatedLedgerConfig(transaction_delay=0.1), clock=clock)
        config = SyncConfig(submit_timeout=0.01, backoff_base=0.0)
        engine = SyncEngine(ledger, MemoryCache(), config=config, clock=clock)

        async def scenario() -> list:
            provisional = make_record(id="local-abc")
            with pytest.raises(SubmissionUncertainError):
                await engine.run_mutation(
                    MutationKind.GRANT, provisional, lambda: ledger.submit_grant(grant_spec())
                )
            await engine.stop()
            return await engine.views(OWNER)

        views = asyncio.run(scenario())
        assert [(v.record.id, v.pending) for v in views] == [("1", False)]

    def test_non_ledger_error_rolls_back(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def submit() -> None:
            raise UnsupportedOperationError("extend", network="simulated")

        async def scenario() -> CacheEntry | None:
            await ledger.submit_grant(grant_spec())
            entry = await engine.current("1")
            optimistic = entry.record.model_copy(update={"expiry": T0 + timedelta(days=2)})
            with pytest.raises(UnsupportedOperationError):
                await engine.run_mutation(MutationKind.EXTEND, optimistic, submit, new_expiry=optimistic.expiry)
            return await engine.cache.get("1")

        current = asyncio.run(scenario())
        assert current.record.expiry == T0 + timedelta(hours=1)
        assert current.pending is False

    def test_unreadable_confirmation_is_uncertain_and_refetched(
        self, ledger: SimulatedLedgerAdapter, clock: FakeClock
    ) -> None:
        class UnreadableAfterSpend(DelegatingLedger):
            """Applies spends without returning the record; the next reads fail."""

            def __init__(self, inner: SimulatedLedgerAdapter) -> None:
                super().__init__(inner)
                self.failing_reads = 0

            async def submit_spend(self, permission_id: str, amount: int) -> TransactionReceipt:
                receipt = await self.inner.submit_spend(permission_id, amount)
                self.failing_reads = FAST_SYNC.max_fetch_attempts
                return TransactionReceipt(transaction_ref=receipt.transaction_ref)

            async def fetch_record(self, permission_id: str) -> PermissionRecord | None:
                self.calls.append("fetch_record")
                if self.failing_reads > 0:
                    self.failing_reads -= 1
                    raise LedgerUnreachableError()
                return await self.inner.fetch_record(permission_id)

        unreadable = UnreadableAfterSpend(ledger)
        engine = SyncEngine(unreadable, MemoryCache(), config=FAST_SYNC, clock=clock)

        async def scenario() -> CacheEntry | None:
            await ledger.submit_grant(grant_spec())
            entry = await engine.current("1")
            optimistic = entry.record.model_copy(update={"spent": 60})
            with pytest.raises(LedgerTimeoutError) as exc_info:
                await engine.run_mutation(
                    MutationKind.SPEND, optimistic, lambda: unreadable.submit_spend("1", 60), amount=60
                )
            assert isinstance(exc_info.value.__cause__, LedgerUnreachableError)
            await asyncio.sleep(0.05)
            return await engine.cache.get("1")

        current = asyncio.run(scenario())
        assert current.record.spent == 60
        assert current.pending is False


# ---------------------------------------------------------------------------
# TestSubscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    def test_subscribers_see_reconciled_changes(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter
    ) -> None:
        seen: list[tuple[str, list[str]]] = []
        engine.subscribe(SPENDER, lambda principal, entries: seen.append((principal, [e.id for e in entries])))

        async def scenario() -> None:
            await ledger.submit_grant(grant_spec())
            await engine.tick(OWNER)
            await engine.tick(OWNER)

        asyncio.run(scenario())
        assert seen == [(SPENDER, ["1"])]

    def test_unsubscribe_and_failing_callback(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter
    ) -> None:
        calls: list[str] = []

        def broken(principal: str, entries: list[CacheEntry]) -> None:
            raise RuntimeError("render failed")

        engine.subscribe(OWNER, broken)
        unsubscribe = engine.subscribe(OWNER, lambda principal, entries: calls.append("removed"))
        engine.subscribe(OWNER, lambda principal, entries: calls.append("kept"))
        unsubscribe()

        async def scenario() -> None:
            await ledger.submit_grant(grant_spec())
            await engine.tick(OWNER)

        asyncio.run(scenario())
        assert calls == ["kept"]


# ---------------------------------------------------------------------------
# TestPolling
# ---------------------------------------------------------------------------


class TestPolling:
    def test_polling_populates_cache(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def scenario() -> int:
            await ledger.submit_grant(grant_spec())
            await engine.start()
            engine.start_polling(OWNER)
            engine.start_polling(OWNER)
            await asyncio.sleep(0.02)
            await engine.stop()
            return len(await engine.cache.all())

        assert asyncio.run(scenario()) == 1

    def test_poll_errors_are_recorded_not_raised(self, clock: FakeClock) -> None:
        ledger = UnreachableLedger(SimulatedLedgerAdapter(clock=clock))
        engine = SyncEngine(ledger, MemoryCache(), config=FAST_SYNC, clock=clock)

        async def scenario() -> str | None:
            engine.start_polling(OWNER)
            await asyncio.sleep(0.02)
            await engine.stop()
            error = engine.last_poll_error(OWNER)
            return error.code if error is not None else None

        assert asyncio.run(scenario()) == "LEDGER_UNREACHABLE"

    def test_corrupt_cache_is_reported_on_start(self, tmp_path: Path, ledger: SimulatedLedgerAdapter) -> None:
        path = tmp_path / "cache.json"
        path.write_text("garbage", encoding="utf-8")
        engine = SyncEngine(ledger, FileCache(path), config=FAST_SYNC)

        asyncio.run(engine.start())
        assert engine.recovered_from_corruption is True


# ---------------------------------------------------------------------------
# TestViewsPruneExport
# ---------------------------------------------------------------------------


class TestViewsPruneExport:
    def test_views_sorted_by_expiry(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def scenario() -> list[str]:
            await ledger.submit_grant(grant_spec(expiry=T0 + timedelta(hours=5)))
            await ledger.submit_grant(grant_spec(expiry=T0 + timedelta(hours=2)))
            await engine.tick(OWNER)
            return [view.record.id for view in await engine.views(OWNER)]

        assert asyncio.run(scenario()) == ["2", "1"]

    def test_prune_removes_terminal_records_only(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter, clock: FakeClock
    ) -> None:
        async def scenario() -> tuple[int, list[str], list[str], int]:
            await ledger.submit_grant(grant_spec(expiry=T0 + timedelta(minutes=30)))
            await ledger.submit_grant(grant_spec(expiry=T0 + timedelta(days=3)))
            await ledger.submit_grant(grant_spec())
            await ledger.submit_revoke("3")
            await engine.tick(OWNER)
            clock.advance(hours=1)
            removed = await engine.prune(OWNER)
            remaining = [entry.id for entry in await engine.cache.all()]
            await engine.tick(OWNER)
            after_poll = [entry.id for entry in await engine.cache.all()]
            return removed, remaining, after_poll, await ledger.total_permissions()

        removed, remaining, after_poll, on_ledger = asyncio.run(scenario())
        assert removed == 2
        assert remaining == ["2"]
        assert after_poll == ["2"]
        assert on_ledger == 3

    def test_prune_respects_age(
        self, engine: SyncEngine, ledger: SimulatedLedgerAdapter, clock: FakeClock
    ) -> None:
        async def scenario() -> tuple[int, int]:
            await ledger.submit_grant(grant_spec(expiry=T0 + timedelta(minutes=30)))
            await engine.tick(OWNER)
            clock.advance(hours=1)
            too_young = await engine.prune(OWNER, older_than=timedelta(days=1))
            clock.advance(days=2)
            old_enough = await engine.prune(OWNER, older_than=timedelta(days=1))
            return too_young, old_enough

        assert asyncio.run(scenario()) == (0, 1)

    def test_export_is_json_ready(self, engine: SyncEngine, ledger: SimulatedLedgerAdapter) -> None:
        async def scenario() -> dict:
            await ledger.submit_grant(grant_spec())
            await engine.tick(OWNER)
            return await engine.export(OWNER)

        exported = asyncio.run(scenario())
        assert exported["principal"] == OWNER
        assert exported["network"] == "simulated"
        assert exported["exported_at"] == T0.isoformat()
        assert exported["permissions"][0]["status"] == PermissionStatus.ACTIVE.value
        json.dumps(exported)
