"""
Batching package for Mindmap Agent
"""

from .strategies import (
    BatchRequestType,
    BatchStrategy,
    BATCH_STRATEGIES,
    GROUPING_STRATEGIES,
    dispatch_order,
    get_strategy
)
from .adaptive import AdaptiveBatchingController, SystemLoad, adjust_for_system_load
from .processor import BatchProcessor, BatchItemResult, BatchRecord

__all__ = [
    "BatchRequestType",
    "BatchStrategy",
    "BATCH_STRATEGIES",
    "GROUPING_STRATEGIES",
    "get_strategy",
    "dispatch_order",
    "AdaptiveBatchingController",
    "SystemLoad",
    "adjust_for_system_load",
    "BatchProcessor",
    "BatchItemResult",
    "BatchRecord"
]
