# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
The one persistence path shared by every on-disk component.

Documents are whole-file JSON snapshots. Writes go to a sibling temporary
file which is then atomically renamed over the target, so a reader never
sees a half-written document and the write is on disk when the call
returns. A document that cannot be parsed is moved aside (``*.corrupt``)
rather than patched up; the owner then rebuilds its state from the ledger.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger("expiry_permissions.persistence")


async def read_document(path: Path) -> str | None:
    """Return the document text, or None if the file does not exist."""
    if not await aiofiles.os.path.exists(path):
        return None
    async with aiofiles.open(path, mode="r", encoding="utf-8") as file_handle:
        return await file_handle.read()


async def write_document(path: Path, text: str) -> None:
    """Atomically replace ``path`` with ``text``."""
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    async with aiofiles.open(temp_path, mode="w", encoding="utf-8") as file_handle:
        await file_handle.write(text)
        await file_handle.flush()
        os.fsync(file_handle.fileno())
    await aiofiles.os.replace(temp_path, path)


async def quarantine_document(path: Path, reason: str) -> Path:
    """Move a corrupt document aside and return where it went."""
    corrupt_path = path.with_name(f"{path.name}.corrupt")
    await aiofiles.os.replace(path, corrupt_path)
    logger.warning(
        "corrupt_document_discarded",
        extra={"path": str(path), "moved_to": str(corrupt_path), "reason": reason},
    )
    return corrupt_path
