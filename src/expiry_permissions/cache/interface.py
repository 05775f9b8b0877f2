# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Abstract base class for the local durable cache.

The cache mirrors ledger state for offline reads and optimistic UI. It is the
only shared mutable state in the package, so every write is a
compare-and-set on the entry ``revision``: a writer reads an entry, computes
the replacement, and passes the revision it read to :meth:`upsert`. If
another writer got there first the upsert is refused and the caller re-reads.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from expiry_permissions.types import CacheEntry


class PermissionCache(ABC):
    """Contract for local permission caches."""

    @abstractmethod
    async def load(self) -> bool:
        """
        Bring persisted state into memory.

        Returns True when persisted data was found corrupt and discarded, in
        which case the caller must refetch everything from the ledger.
        """
        ...

    @abstractmethod
    async def get(self, permission_id: str) -> CacheEntry | None:
        ...

    @abstractmethod
    async def get_all_for_principal(self, principal: str) -> list[CacheEntry]:
        """Return every entry whose record names ``principal`` as owner or spender."""
        ...

    @abstractmethod
    async def all(self) -> list[CacheEntry]:
        ...

    @abstractmethod
    async def upsert(self, entry: CacheEntry, expected_revision: int | None) -> CacheEntry | None:
        """
        Store ``entry`` if the stored revision still equals ``expected_revision``.

        ``expected_revision=None`` means the entry must not exist yet.
        Implementations must make the write durable before returning.

        Returns:
            The stored entry with its new revision, or None if the
            comparison failed and nothing was written.
        """
        ...

    @abstractmethod
    async def remove(self, permission_id: str, expected_revision: int | None = None) -> bool:
        """
        Remove an entry.

        When ``expected_revision`` is given the entry is only removed if its
        revision still matches. Returns True if an entry was removed.
        """
        ...
