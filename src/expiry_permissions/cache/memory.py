# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Volatile in-memory cache.

Suitable for tests and short-lived processes. Nothing survives the process;
the first poll after start repopulates it from the ledger.
"""

from __future__ import annotations

from expiry_permissions.cache.interface import PermissionCache
from expiry_permissions.types import CacheEntry


class MemoryCache(PermissionCache):
    """In-memory, non-persistent PermissionCache implementation."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def load(self) -> bool:
        return False

    async def get(self, permission_id: str) -> CacheEntry | None:
        return self._entries.get(permission_id)

    async def get_all_for_principal(self, principal: str) -> list[CacheEntry]:
        return [entry for entry in self._entries.values() if entry.record.involves(principal)]

    async def all(self) -> list[CacheEntry]:
        return list(self._entries.values())

    async def upsert(self, entry: CacheEntry, expected_revision: int | None) -> CacheEntry | None:
        return self._apply_upsert(entry, expected_revision)

    async def remove(self, permission_id: str, expected_revision: int | None = None) -> bool:
        return self._apply_remove(permission_id, expected_revision) is not None

    # Synchronous halves, so subclasses can wrap them in a lock plus a flush.

    def _apply_upsert(self, entry: CacheEntry, expected_revision: int | None) -> CacheEntry | None:
        current = self._entries.get(entry.id)
        current_revision = None if current is None else current.revision
        if current_revision != expected_revision:
            return None
        stored = entry.model_copy(update={"revision": (current_revision or 0) + 1})
        self._entries[entry.id] = stored
        return stored

    def _apply_remove(self, permission_id: str, expected_revision: int | None) -> CacheEntry | None:
        current = self._entries.get(permission_id)
        if current is None:
            return None
        if expected_revision is not None and current.revision != expected_revision:
            return None
        del self._entries[permission_id]
        return current
