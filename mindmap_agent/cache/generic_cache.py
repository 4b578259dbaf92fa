"""
Generic in-memory TTL cache
Expiry is lazy: an expired entry is removed when it is read
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 60 * 60

@dataclass
class CacheEntry(Generic[V]):
    """Stored value with insertion time and expiry"""
    value: V
    inserted_at: float
    expires_at: float

class GenericCache:
    """Key-value cache with per-entry TTL"""

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            default_ttl: TTL in seconds applied when ``set`` receives none
            clock: Time source in seconds
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._live_entry(key)
        return default if entry is None else entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._live_entry(key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            inserted_at=now,
            expires_at=now + (self.default_ttl if ttl is None else ttl)
        )

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def keys_with_prefix(self, prefix: str) -> List[str]:
        """Return live keys starting with prefix, evicting expired ones on the way"""
        return [key for key in list(self._entries) if key.startswith(prefix) and self._live_entry(key) is not None]

    def cleanup_expired(self) -> int:
        """Evict every expired entry and return how many were removed"""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return len(expired)

__all__ = ["GenericCache", "CacheEntry", "DEFAULT_TTL_SECONDS"]
