"""
Pairwise similarity cache
Keys are order-independent so A-vs-B and B-vs-A share one entry
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set

from .generic_cache import GenericCache

logger = logging.getLogger(__name__)

SIMILARITY_TTL_SECONDS = 60 * 60

@dataclass
class SimilarityScore:
    """Combined score for a theme pair and how it was obtained"""
    score: float
    should_merge: bool
    confidence: float
    reasoning: str = ""
    source: str = "ai"

def similarity_cache_key(first_id: str, second_id: str) -> str:
    """Build a symmetric pair key from two theme ids"""
    low, high = sorted((first_id, second_id))
    return f"{low}::{high}"

class SimilarityCache:
    """TTL cache of pairwise similarity results"""

    def __init__(self, ttl: float = SIMILARITY_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._cache = GenericCache(default_ttl=ttl, clock=clock)
        self._files_by_key: Dict[str, Set[str]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, first_id: str, second_id: str) -> Optional[SimilarityScore]:
        key = similarity_cache_key(first_id, second_id)
        value = self._cache.get(key)
        if value is None:
            self.misses += 1
            self._files_by_key.pop(key, None)
            return None
        self.hits += 1
        return value

    def set(
        self,
        first_id: str,
        second_id: str,
        similarity: SimilarityScore,
        files: Iterable[str] = ()
    ) -> None:
        key = similarity_cache_key(first_id, second_id)
        self._cache.set(key, similarity)
        self._files_by_key[key] = set(files)

    def invalidate_by_files(self, modified_files: Iterable[str]) -> int:
        """Drop every pair whose themes touched one of the modified files"""
        modified = set(modified_files)
        stale = [key for key, files in self._files_by_key.items() if files & modified]
        for key in stale:
            self._cache.delete(key)
            del self._files_by_key[key]
        if stale:
            logger.info(f"Invalidated {len(stale)} similarity cache entries for {len(modified)} modified files")
        return len(stale)

    def clear(self) -> None:
        self._cache.clear()
        self._files_by_key.clear()

    def get_stats(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "size": self._cache.size(),
            "ttl_seconds": self._cache.default_ttl,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0
        }

__all__ = ["SimilarityCache", "SimilarityScore", "similarity_cache_key", "SIMILARITY_TTL_SECONDS"]
