"""
TTL cache for exchange rates.

An explicit cache object that owns its TTL and invalidation. It is injected
into the adapters that need FX conversion, so tests control time and every
test gets an isolated cache.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateCache:
    """
    Caches FX rates keyed by currency pair.

    Features:
    - Per-entry TTL measured on an injectable monotonic clock
    - Explicit invalidation of one pair or the whole cache
    - get_or_compute for read-through use

    Example:
        cache = RateCache(ttl=300)
        rate = cache.get_or_compute("USD", "KES", lambda: fetch_rate("USD", "KES"))
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.

        Args:
            ttl: Seconds a cached rate stays valid
            clock: Monotonic clock returning seconds
        """
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict] = {}

    @staticmethod
    def _get_cache_key(from_currency: str, to_currency: str) -> str:
        """Cache key for a currency pair."""
        return f"{from_currency.upper()}_{to_currency.upper()}"

    def get(self, from_currency: str, to_currency: str) -> Optional[float]:
        """
        Get a cached rate if still valid.

        Returns:
            Rate, or None on miss or expiry
        """
        key = self._get_cache_key(from_currency, to_currency)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if self._clock() - entry["stored_at"] >= self.ttl:
                del self._entries[key]
                logger.debug(f"Rate cache expired: {key}")
                return None

            return entry["rate"]

    def put(self, from_currency: str, to_currency: str, rate: float) -> None:
        """Cache a rate."""
        key = self._get_cache_key(from_currency, to_currency)
        with self._lock:
            self._entries[key] = {"rate": rate, "stored_at": self._clock()}

    def invalidate(self, from_currency: str, to_currency: str) -> bool:
        """
        Invalidate one pair.

        Returns:
            True if an entry was removed
        """
        key = self._get_cache_key(from_currency, to_currency)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear_all(self) -> int:
        """
        Clear all entries.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries = {}

        logger.info(f"Cleared {count} cached rates")
        return count

    def get_or_compute(
        self,
        from_currency: str,
        to_currency: str,
        compute_fn: Callable[[], float],
    ) -> float:
        """
        Get a cached rate or compute and cache it.

        Errors from compute_fn propagate; nothing is cached on failure.
        """
        cached = self.get(from_currency, to_currency)
        if cached is not None:
            return cached

        rate = compute_fn()
        self.put(from_currency, to_currency, rate)
        return rate
