# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

from expiry_permissions.cache.file import FileCache
from expiry_permissions.cache.interface import PermissionCache
from expiry_permissions.cache.memory import MemoryCache
from expiry_permissions.config import CacheConfig


def build_cache(config: CacheConfig) -> PermissionCache:
    """Return a FileCache when a path is configured, else a MemoryCache."""
    if config.path is not None:
        return FileCache(config.path)
    return MemoryCache()


__all__ = ["FileCache", "MemoryCache", "PermissionCache", "build_cache"]
