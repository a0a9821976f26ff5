# schema_cache.py
import asyncio
import hashlib
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

import diskcache

logger = logging.getLogger(__name__)


def get_cache_key(schema_locator: str) -> str:
    """Generates a SHA256 cache key for a document location."""
    return hashlib.sha256(schema_locator.encode("utf-8")).hexdigest()


class SchemaDocumentCache:
    """
    Location-keyed cache of raw interface documents.

    Backed by a plain dict (lifetime = this object, e.g. one plan run or one process)
    or by a diskcache.Cache directory shared across processes. Entries never expire.
    At most one fetch per key is in flight; concurrent callers for the same key wait for it.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        self._memory: Dict[str, Any] = {}
        self._disk: Optional[diskcache.Cache] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)
            self._disk = diskcache.Cache(cache_dir)
            logger.info(f"Initialized schema cache at: {cache_dir}")

    @property
    def persistent(self) -> bool:
        return self._disk is not None

    def get(self, schema_locator: str) -> Optional[Any]:
        key = get_cache_key(schema_locator)
        if self._disk is not None:
            return self._disk.get(key)
        return self._memory.get(key)

    def set(self, schema_locator: str, document: Any) -> None:
        key = get_cache_key(schema_locator)
        if self._disk is not None:
            self._disk.set(key, document)
        else:
            self._memory[key] = document

    def __contains__(self, schema_locator: str) -> bool:
        return self.get(schema_locator) is not None

    async def _lookup(self, schema_locator: str) -> Optional[Any]:
        if self._disk is not None:
            return await asyncio.to_thread(self.get, schema_locator)
        return self.get(schema_locator)

    async def _store(self, schema_locator: str, document: Any) -> None:
        if self._disk is not None:
            await asyncio.to_thread(self.set, schema_locator, document)
        else:
            self.set(schema_locator, document)

    async def get_or_fetch(self, schema_locator: str, fetch: Callable[[str], Awaitable[Any]]) -> Any:
        cached = await self._lookup(schema_locator)
        if cached is not None:
            logger.debug(f"Schema cache hit for: {schema_locator}")
            return cached

        lock = self._locks.setdefault(schema_locator, asyncio.Lock())
        async with lock:
            # Another caller may have filled the entry while we waited
            cached = await self._lookup(schema_locator)
            if cached is not None:
                logger.debug(f"Schema cache hit after wait for: {schema_locator}")
                return cached
            logger.debug(f"Schema cache miss for: {schema_locator}")
            document = await fetch(schema_locator)
            await self._store(schema_locator, document)
            # Entry is filled; later callers never take the lock
            self._locks.pop(schema_locator, None)
            return document

    def clear(self) -> None:
        self._memory.clear()
        if self._disk is not None:
            self._disk.clear()

    def close(self) -> None:
        if self._disk is not None:
            self._disk.close()
            logger.info("Schema cache closed.")
