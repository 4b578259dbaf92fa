"""
Batching strategies per request type
Flush policy, size bounds and optional grouping keys for batch formation
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union


class BatchRequestType(str, Enum):
    """Request kinds that can be folded into one inference call"""
    SIMILARITY_CHECK = "similarity_check"
    THEME_EXPANSION = "theme_expansion"
    DOMAIN_EXTRACTION = "domain_extraction"
    CROSS_LEVEL_SIMILARITY = "cross_level_similarity"
    CODE_ANALYSIS = "code_analysis"


@dataclass(frozen=True)
class BatchStrategy:
    """
    Flush and sizing policy for one request type

    A queue flushes when it holds at least ``flush_size`` items or its oldest
    item is older than ``batch_timeout`` seconds, whichever happens first.
    Adaptive sizing stays within ``min_batch_size`` and ``max_batch_size``, and
    queues with a higher ``priority_weight`` are dispatched first.
    """
    request_type: BatchRequestType
    min_batch_size: int
    max_batch_size: int
    flush_size: int
    batch_timeout: float
    priority_weight: float

    def should_flush(self, queue_size: int, oldest_item_age: float) -> bool:
        return queue_size >= self.flush_size or oldest_item_age > self.batch_timeout


BATCH_STRATEGIES: Dict[BatchRequestType, BatchStrategy] = {
    BatchRequestType.SIMILARITY_CHECK: BatchStrategy(
        BatchRequestType.SIMILARITY_CHECK, min_batch_size=3, max_batch_size=15,
        flush_size=10, batch_timeout=0.5, priority_weight=0.8
    ),
    BatchRequestType.THEME_EXPANSION: BatchStrategy(
        BatchRequestType.THEME_EXPANSION, min_batch_size=2, max_batch_size=8,
        flush_size=5, batch_timeout=1.0, priority_weight=0.6
    ),
    BatchRequestType.DOMAIN_EXTRACTION: BatchStrategy(
        BatchRequestType.DOMAIN_EXTRACTION, min_batch_size=5, max_batch_size=30,
        flush_size=15, batch_timeout=2.0, priority_weight=0.4
    ),
    BatchRequestType.CROSS_LEVEL_SIMILARITY: BatchStrategy(
        BatchRequestType.CROSS_LEVEL_SIMILARITY, min_batch_size=3, max_batch_size=12,
        flush_size=8, batch_timeout=0.8, priority_weight=0.7
    ),
    BatchRequestType.CODE_ANALYSIS: BatchStrategy(
        BatchRequestType.CODE_ANALYSIS, min_batch_size=1, max_batch_size=5,
        flush_size=3, batch_timeout=0.3, priority_weight=0.9
    ),
}


def get_strategy(request_type: Union[BatchRequestType, str]) -> Optional[BatchStrategy]:
    try:
        return BATCH_STRATEGIES.get(BatchRequestType(request_type))
    except ValueError:
        return None


def dispatch_order() -> List[BatchRequestType]:
    """Request types by descending priority weight"""
    return sorted(BATCH_STRATEGIES, key=lambda request_type: BATCH_STRATEGIES[request_type].priority_weight, reverse=True)


def group_by_domain_pair(payload: Mapping[str, Any]) -> str:
    """Similarity pairs grouped by their (sorted) domains"""
    domains = sorted(
        str((payload.get(key) or {}).get("domain", "")) for key in ("theme1", "theme2")
    )
    return "-".join(domains)


def group_by_file_size(payload: Mapping[str, Any]) -> str:
    """Code analysis requests grouped by diff size"""
    size = len(payload.get("diff_content") or "")
    if size < 1000:
        return "small"
    if size < 5000:
        return "medium"
    return "large"


def group_by_complexity(payload: Mapping[str, Any]) -> str:
    """Expansion requests grouped by how many files the theme touches"""
    file_count = len(payload.get("affected_files") or [])
    if file_count < 5:
        return "simple"
    if file_count < 20:
        return "moderate"
    return "complex"


GROUPING_STRATEGIES: Dict[BatchRequestType, Callable[[Mapping[str, Any]], str]] = {
    BatchRequestType.SIMILARITY_CHECK: group_by_domain_pair,
    BatchRequestType.CODE_ANALYSIS: group_by_file_size,
    BatchRequestType.THEME_EXPANSION: group_by_complexity,
}


def select_group(items: List[Any], size: int, key_of: Callable[[Any], str]) -> List[Any]:
    """
    Pick the items for the next batch from the largest group

    Groups keep queue order. Any group that can fill the batch on its own
    replaces the current pick.
    """
    groups: Dict[str, List[Any]] = {}
    for item in items:
        groups.setdefault(key_of(item), []).append(item)

    best: List[Any] = []
    for group in groups.values():
        if len(group) >= size or len(group) > len(best):
            best = group
    return best[:size]


__all__ = [
    "BatchRequestType",
    "BatchStrategy",
    "BATCH_STRATEGIES",
    "GROUPING_STRATEGIES",
    "get_strategy",
    "dispatch_order",
    "group_by_domain_pair",
    "group_by_file_size",
    "group_by_complexity",
    "select_group",
]
