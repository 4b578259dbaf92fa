"""
Utilities package for Mindmap Agent
"""

from .concurrency import (
    ConcurrencyContext,
    ConcurrencyManager,
    FailedItem,
    RetryPolicy,
    SystemMetrics,
    calculate_backoff_delay,
    calculate_optimal_concurrency,
    get_retry_policy,
    get_system_metrics,
    separate_results
)

__all__ = [
    "ConcurrencyContext",
    "ConcurrencyManager",
    "FailedItem",
    "RetryPolicy",
    "SystemMetrics",
    "calculate_backoff_delay",
    "calculate_optimal_concurrency",
    "get_retry_policy",
    "get_system_metrics",
    "separate_results"
]
