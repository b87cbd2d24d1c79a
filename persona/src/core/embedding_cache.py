"""
Persona - EmbeddingCache
==========================
Bounded, TTL'd, in-process cache mapping text → embedding vector.

Behaviour
---------
• **TTL (lazy)**: an entry older than ``ttl_seconds`` is a miss and is
  purged by the lookup that finds it.
• **Insertion-order eviction**: when the cache is full and a *new* key
  arrives, the earliest-inserted entry is dropped.  Reads never promote.
  Re-setting an existing key refreshes it and moves it to the back.
• **Keys**: ``emb_<blake2b-128>_<len(text)>``, the digest taken over
  ``namespace + NUL + text``.  Callers pass the embedding backend's
  ``cache_namespace`` (provider, model and endpoint) so vectors from
  different embedding spaces never share an entry.
• **No normalisation**: the cache stores whatever vector it is given;
  callers normalise before ``set``.

Concurrency
-----------
One instance is shared by every in-flight request.  A ``threading.Lock``
guards the read-check-evict-insert bookkeeping only; it is never held
across an embedding call.

The instance is created once by the composition root and injected, never
looked up from module state.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from persona.config.settings import settings
from persona.src.utils.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    vector: list[float]
    inserted_at: float


def cache_key(text: str, namespace: str = "") -> str:
    """Stable key for *text* within *namespace*: 128-bit BLAKE2b digest plus character length."""
    digest = hashlib.blake2b(f"{namespace}\x00{text}".encode("utf-8"), digest_size=16).hexdigest()
    return f"emb_{digest}_{len(text)}"


class EmbeddingCache:
    """
    Thread-safe embedding cache with TTL expiry and FIFO eviction.

    Parameters
    ----------
    max_size
        Capacity in entries (default ``settings.EMBED_CACHE_MAX_SIZE``).
    ttl_seconds
        Entry lifetime (default ``settings.EMBED_CACHE_TTL_SECONDS``).
    clock
        Monotonic time source; injectable for tests.
    """

    __slots__ = ("_entries", "_lock", "_clock", "max_size", "ttl_seconds", "hits", "misses")

    def __init__(self, max_size: int | None = None, ttl_seconds: float | None = None, clock: Clock = time.monotonic) -> None:
        self.max_size: int = max_size if max_size is not None else settings.EMBED_CACHE_MAX_SIZE
        self.ttl_seconds: float = ttl_seconds if ttl_seconds is not None else settings.EMBED_CACHE_TTL_SECONDS
        if self.max_size < 1:
            raise ValueError(f"max_size must be ≥ 1, got {self.max_size}")

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock
        self.hits = 0
        self.misses = 0


    def get(self, text: str, namespace: str = "") -> list[float] | None:
        """Return the cached vector for *text* in *namespace*, or ``None`` if absent or expired."""
        key = cache_key(text, namespace)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if self._clock() - entry.inserted_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                logger.debug("[CACHE] Expired entry purged: %s", key)
                return None

            self.hits += 1
            return entry.vector


    def set(self, text: str, vector: list[float], namespace: str = "") -> None:
        """Insert *vector* for *text* in *namespace*, evicting the oldest entry when full."""
        key = cache_key(text, namespace)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[CACHE] At capacity (%d), evicted %s", self.max_size, evicted)

            self._entries[key] = CacheEntry(vector=list(vector), inserted_at=self._clock())


    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        logger.info("[CACHE] Cleared.")


    def stats(self) -> dict[str, int | str]:
        with self._lock:
            size = len(self._entries)
            return {"size": size, "max_size": self.max_size, "utilization": f"{size / self.max_size * 100:.2f}%", "hits": self.hits, "misses": self.misses}


    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


    def __repr__(self) -> str:
        return f"EmbeddingCache(size={len(self)}, max_size={self.max_size}, ttl_seconds={self.ttl_seconds})"
