# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Durable JSON-file cache.

The whole cache is one versioned JSON document, rewritten atomically after
every change. Writes are serialised by a lock and are on disk before
``upsert``/``remove`` return. A document that fails to parse, or carries a
different schema version, is moved aside and the cache starts empty; the
SyncEngine then refetches everything from the ledger.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from expiry_permissions.cache.memory import MemoryCache
from expiry_permissions.errors import CacheWriteError
from expiry_permissions.persistence import quarantine_document, read_document, write_document
from expiry_permissions.types import CacheEntry

logger = logging.getLogger("expiry_permissions.cache")

CACHE_SCHEMA_VERSION = 1


class CacheDocument(BaseModel):
    """On-disk layout of the cache."""

    schema_version: int = CACHE_SCHEMA_VERSION
    entries: list[CacheEntry] = Field(default_factory=list)


class FileCache(MemoryCache):
    """
    Persistent PermissionCache backed by a single JSON file.

    Parameters
    ----------
    path:
        Location of the JSON document. Created on first write.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> bool:
        async with self._lock:
            raw = await read_document(self._path)
            if raw is None:
                return False
            try:
                document = CacheDocument.model_validate_json(raw)
            except (ValidationError, json.JSONDecodeError) as exc:
                await quarantine_document(self._path, reason=str(exc))
                self._entries = {}
                return True
            if document.schema_version != CACHE_SCHEMA_VERSION:
                await quarantine_document(
                    self._path, reason=f"schema_version {document.schema_version}"
                )
                self._entries = {}
                return True
            self._entries = {entry.id: entry for entry in document.entries}
            logger.info(
                "cache_loaded",
                extra={"path": str(self._path), "entries": len(self._entries)},
            )
            return False

    async def upsert(self, entry: CacheEntry, expected_revision: int | None) -> CacheEntry | None:
        async with self._lock:
            previous = self._entries.get(entry.id)
            stored = self._apply_upsert(entry, expected_revision)
            if stored is None:
                return None
            try:
                await self._flush()
            except OSError as exc:
                self._restore(entry.id, previous)
                raise CacheWriteError(str(self._path), str(exc)) from exc
            return stored

    async def remove(self, permission_id: str, expected_revision: int | None = None) -> bool:
        async with self._lock:
            removed = self._apply_remove(permission_id, expected_revision)
            if removed is None:
                return False
            try:
                await self._flush()
            except OSError as exc:
                self._restore(permission_id, removed)
                raise CacheWriteError(str(self._path), str(exc)) from exc
            return True

    def _restore(self, permission_id: str, previous: CacheEntry | None) -> None:
        if previous is None:
            self._entries.pop(permission_id, None)
        else:
            self._entries[permission_id] = previous

    async def _flush(self) -> None:
        document = CacheDocument(entries=list(self._entries.values()))
        await write_document(self._path, document.model_dump_json())
