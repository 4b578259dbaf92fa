"""
Semantic cache for inference results
Exact key lookup first, then a fuzzy match over token sets of the request's
free-text fields: a stored entry whose Jaccard similarity to the incoming
request is at least 0.85 is reused even though the literal key differs.
Entries expire by context-specific TTL and can be purged by file modification.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from pydantic import BaseModel

from .generic_cache import GenericCache

logger = logging.getLogger(__name__)

SEMANTIC_SIMILARITY_THRESHOLD = 0.85
WARM_CACHE_TTL_SECONDS = 4 * 60 * 60
DEFAULT_CONTEXT_TTL_SECONDS = 60 * 60

CONTEXT_TTLS: Dict[str, float] = {
    "file-analysis": 2 * 60 * 60,
    "domain-classification": 2 * 60 * 60,
    "pattern-recognition": 2 * 60 * 60,
    "similarity-calculation": 60 * 60,
    "theme-expansion": 60 * 60,
    "cross-level-analysis": 30 * 60,
    "hierarchy-analysis": 30 * 60,
    "consolidation": 30 * 60,
}

STOP_WORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might",
    "this", "that", "these", "those", "a", "an",
})

TEXT_FIELDS = ("name", "description", "businessImpact", "content")
STORED_FIELDS = ("name", "description", "businessImpact", "content", "affectedFiles", "themeName", "changeType")

_PUNCTUATION = re.compile(r"[^\w\s]")

@dataclass
class SemanticEntry:
    """Cached result with the token set it was stored under"""
    result: Any
    tokens: FrozenSet[str]
    context_type: str
    original_input: Any

def _camel_key(key: str) -> str:
    if "_" not in key:
        return key
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)

def _normalize_input(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, Mapping):
        return {_camel_key(str(key)): item for key, item in value.items()}
    return value

def extract_text_tokens(text: str) -> List[str]:
    """Lowercase, strip punctuation, drop short tokens and stop words"""
    words = _PUNCTUATION.sub(" ", text.lower()).split()
    return [word for word in words if len(word) > 2 and word not in STOP_WORDS]

def extract_file_tokens(file_path: str) -> List[str]:
    """Filename stem and extension of a path"""
    parts = file_path.split("/")[-1].split(".")
    stem = parts[0].lower()
    extension = parts[-1].lower()
    tokens = []
    if stem:
        tokens.append(stem)
    if extension and extension != stem:
        tokens.append(extension)
    return tokens

def generate_semantic_tokens(value: Any) -> FrozenSet[str]:
    """Build the token set used for fuzzy matching"""
    value = _normalize_input(value)
    tokens: List[str] = []

    if isinstance(value, str):
        tokens.extend(extract_text_tokens(value))
    elif isinstance(value, dict):
        for field_name in TEXT_FIELDS:
            text = value.get(field_name)
            if isinstance(text, str):
                tokens.extend(extract_text_tokens(text))
        files = value.get("affectedFiles")
        if isinstance(files, list):
            for file_path in files:
                if isinstance(file_path, str):
                    tokens.extend(extract_file_tokens(file_path))

    return frozenset(token for token in tokens if len(token) > 2)

def jaccard_similarity(first: FrozenSet[str], second: FrozenSet[str]) -> float:
    """Token overlap; an empty set matches nothing, not even another empty set"""
    if not first or not second:
        return 0.0
    return len(first & second) / len(first | second)

def generate_cache_key(value: Any) -> str:
    """Exact-match key: first 16 hex chars of the sha256 of the JSON input"""
    serialized = json.dumps(_normalize_input(value), sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]

def sanitize_input_for_storage(value: Any) -> Any:
    """Keep only matching-relevant fields, truncated"""
    value = _normalize_input(value)
    if isinstance(value, str):
        return value[:1000]
    if isinstance(value, dict):
        sanitized = {}
        for field_name in STORED_FIELDS:
            if field_name not in value:
                continue
            item = value[field_name]
            if isinstance(item, str):
                sanitized[field_name] = item[:500]
            elif isinstance(item, list):
                sanitized[field_name] = item[:20]
            else:
                sanitized[field_name] = item
        return sanitized
    return value

def get_context_ttl(context_type: str) -> float:
    return CONTEXT_TTLS.get(context_type, DEFAULT_CONTEXT_TTL_SECONDS)

class SemanticCache:
    """Exact and fuzzy (token Jaccard) cache of inference results"""

    def __init__(
        self,
        similarity_threshold: float = SEMANTIC_SIMILARITY_THRESHOLD,
        clock: Callable[[], float] = time.monotonic
    ):
        self.similarity_threshold = similarity_threshold
        self._cache = GenericCache(default_ttl=DEFAULT_CONTEXT_TTL_SECONDS, clock=clock)
        self.exact_hits = 0
        self.semantic_hits = 0
        self.misses = 0

    def get(self, value: Any, context_type: str, cache_key: Optional[str] = None) -> Optional[Any]:
        """
        Look up a cached result for an input

        Args:
            value: Request input (string, mapping or pydantic model)
            context_type: Analysis context, also the key namespace
            cache_key: Explicit exact key, derived from the input when omitted

        Returns:
            The cached result, or None on a miss
        """
        key = cache_key or generate_cache_key(value)
        entry = self._cache.get(f"{context_type}:{key}")
        if entry is not None:
            self.exact_hits += 1
            logger.debug(f"Exact cache hit for {context_type}")
            return entry.result

        tokens = generate_semantic_tokens(value)
        for full_key in self._cache.keys_with_prefix(f"{context_type}:"):
            candidate = self._cache.get(full_key)
            if candidate is None:
                continue
            similarity = jaccard_similarity(tokens, candidate.tokens)
            if similarity >= self.similarity_threshold:
                self.semantic_hits += 1
                logger.debug(f"Semantic cache hit for {context_type} with {similarity:.1%} similarity")
                return candidate.result

        self.misses += 1
        return None

    def set(
        self,
        value: Any,
        result: Any,
        context_type: str,
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None
    ) -> None:
        """Store a result indexed by exact key and token set"""
        key = cache_key or generate_cache_key(value)
        entry = SemanticEntry(
            result=result,
            tokens=generate_semantic_tokens(value),
            context_type=context_type,
            original_input=sanitize_input_for_storage(value)
        )
        self._cache.set(f"{context_type}:{key}", entry, ttl if ttl is not None else get_context_ttl(context_type))

    def warm_cache(self, patterns: Iterable[Mapping[str, Any]]) -> int:
        """Preload results for predictable inputs: each pattern has input, result and context_type"""
        count = 0
        for pattern in patterns:
            self.set(pattern["input"], pattern["result"], pattern["context_type"], ttl=WARM_CACHE_TTL_SECONDS)
            count += 1
        logger.info(f"Warmed semantic cache with {count} patterns")
        return count

    def invalidate_by_files(self, modified_files: Iterable[str]) -> int:
        """Purge entries whose stored input referenced a modified file, regardless of TTL"""
        modified = set(modified_files)
        removed = 0
        for full_key in self._cache.keys_with_prefix(""):
            entry = self._cache.get(full_key)
            if entry is None or not isinstance(entry.original_input, dict):
                continue
            files = entry.original_input.get("affectedFiles") or []
            if any(file_path in modified for file_path in files):
                self._cache.delete(full_key)
                removed += 1
                logger.debug(f"Invalidated semantic cache entry {full_key}")
        if removed:
            logger.info(f"Invalidated {removed} semantic cache entries for {len(modified)} modified files")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        breakdown: Dict[str, int] = {}
        keys = self._cache.keys_with_prefix("")
        for full_key in keys:
            context_type = full_key.split(":", 1)[0]
            breakdown[context_type] = breakdown.get(context_type, 0) + 1

        lookups = self.exact_hits + self.semantic_hits + self.misses
        return {
            "total_entries": len(keys),
            "exact_hits": self.exact_hits,
            "semantic_hits": self.semantic_hits,
            "misses": self.misses,
            "hit_rate": (self.exact_hits + self.semantic_hits) / lookups if lookups else 0.0,
            "context_breakdown": breakdown
        }

    def clear(self) -> None:
        self._cache.clear()
        logger.debug("Semantic cache cleared")

__all__ = [
    "SemanticCache",
    "SemanticEntry",
    "CONTEXT_TTLS",
    "SEMANTIC_SIMILARITY_THRESHOLD",
    "extract_file_tokens",
    "extract_text_tokens",
    "generate_cache_key",
    "generate_semantic_tokens",
    "get_context_ttl",
    "jaccard_similarity",
    "sanitize_input_for_storage",
]
