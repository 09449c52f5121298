"""Size-bounded LRU cache of template bytes.

Entries are immutable: a template id always refers to the same content
version, so an entry is never refreshed, only inserted or evicted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 500 * 1024 * 1024


@dataclass(frozen=True)
class TemplateCacheEntry:
  key: str
  data: bytes
  size_bytes: int
  cached_at: float


@dataclass
class TemplateCacheStats:
  hits: int = 0
  misses: int = 0
  evictions: int = 0
  current_bytes: int = 0
  entry_count: int = 0

  def as_dict(self) -> dict[str, int]:
    return {"hits": self.hits, "misses": self.misses, "evictions": self.evictions, "currentSize": self.current_bytes, "entryCount": self.entry_count}


class TemplateCache:
  """In-process LRU keyed by template id with a total byte budget."""

  def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
    if max_bytes <= 0:
      raise ValueError("max_bytes must be positive")
    self.max_bytes = max_bytes
    self._entries: OrderedDict[str, TemplateCacheEntry] = OrderedDict()
    self._stats = TemplateCacheStats()
    self._pending: dict[str, asyncio.Future[bytes]] = {}

  def __contains__(self, key: str) -> bool:
    return key in self._entries

  def peek(self, key: str) -> bytes | None:
    """Return cached bytes without touching recency or stats."""
    entry = self._entries.get(key)
    return entry.data if entry is not None else None

  def lookup(self, key: str) -> bytes | None:
    entry = self._entries.get(key)
    if entry is None:
      self._stats.misses += 1
      return None
    self._entries.move_to_end(key)
    self._stats.hits += 1
    return entry.data

  def put(self, key: str, data: bytes) -> None:
    """Insert an entry and evict least recently used entries over budget."""
    size = len(data)
    if size > self.max_bytes:
      logger.warning("Template %s (%d bytes) exceeds the cache budget of %d bytes; not caching.", key, size, self.max_bytes)
      return
    if key in self._entries:
      return

    self._entries[key] = TemplateCacheEntry(key=key, data=data, size_bytes=size, cached_at=time.time())
    self._stats.current_bytes += size
    self._stats.entry_count += 1

    while self._stats.current_bytes > self.max_bytes:
      evicted_key, evicted = self._entries.popitem(last=False)
      self._stats.current_bytes -= evicted.size_bytes
      self._stats.entry_count -= 1
      self._stats.evictions += 1
      logger.debug("Evicted template %s (%d bytes) from cache", evicted_key, evicted.size_bytes)

    logger.info("Template %s cached (%d bytes, total=%d, entries=%d)", key, size, self._stats.current_bytes, self._stats.entry_count)

  async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[bytes]]) -> bytes:
    """Return cached bytes or fetch once, sharing the fetch with concurrent callers."""
    cached = self.lookup(key)
    if cached is not None:
      return cached

    pending = self._pending.get(key)
    while pending is not None:
      try:
        return await asyncio.shield(pending)
      except asyncio.CancelledError:
        # Only the owner's cancellation cancels the shared future; a waiter then takes over the fetch.
        if not pending.cancelled():
          raise
      pending = self._pending.get(key)

    future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
    self._pending[key] = future
    try:
      data = await fetch()
    except asyncio.CancelledError:
      future.cancel()
      raise
    except Exception as exc:
      future.set_exception(exc)
      # Waiters re-raise; mark retrieved so an unobserved failure is not logged.
      future.exception()
      raise
    else:
      self.put(key, data)
      future.set_result(data)
      return data
    finally:
      self._pending.pop(key, None)

  def stats(self) -> TemplateCacheStats:
    return TemplateCacheStats(**vars(self._stats))

  def clear(self) -> None:
    count = len(self._entries)
    self._entries.clear()
    self._stats.current_bytes = 0
    self._stats.entry_count = 0
    logger.info("Template cache cleared (%d entries)", count)
