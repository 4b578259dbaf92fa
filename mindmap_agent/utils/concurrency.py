"""
Concurrency management for Mindmap Agent
Bounded-parallelism processing with per-item retry, context-aware backoff and
dynamic concurrency sizing from system resources
"""

import asyncio
import logging
import math
import os
import random
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union

from ..errors import AuthenticationError, is_rate_limit_error

if sys.platform != "win32":
    import resource

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MEMORY_PRESSURE_RATIO = 0.85
MEMORY_PRESSURE_RSS_MB = 512
MIN_BACKOFF_DELAY = 0.1
MAX_BACKOFF_DELAY = 30.0

class ConcurrencyContext(str, Enum):
    """Workload kinds with their own concurrency cap and retry policy"""
    THEME_PROCESSING = "theme_processing"
    AI_BATCH = "ai_batch"
    GENERAL = "general"

@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff parameters"""
    max_retries: int
    base_delay: float
    multiplier: float

# context -> (rate-limit policy, policy for any other error)
RETRY_POLICIES: Dict[ConcurrencyContext, Tuple[RetryPolicy, RetryPolicy]] = {
    ConcurrencyContext.THEME_PROCESSING: (RetryPolicy(5, 2.0, 1.8), RetryPolicy(3, 1.0, 1.8)),
    ConcurrencyContext.AI_BATCH: (RetryPolicy(6, 3.0, 2.2), RetryPolicy(2, 0.8, 2.2)),
    ConcurrencyContext.GENERAL: (RetryPolicy(4, 1.0, 2.0), RetryPolicy(3, 1.0, 2.0)),
}

CONTEXT_CONCURRENCY_CAPS: Dict[ConcurrencyContext, int] = {
    ConcurrencyContext.THEME_PROCESSING: 8,
    ConcurrencyContext.AI_BATCH: 10,
    ConcurrencyContext.GENERAL: 12,
}

@dataclass
class SystemMetrics:
    """Resource snapshot used for concurrency sizing"""
    cpu_count: int
    memory_usage_ratio: float
    process_rss_mb: float
    is_under_memory_pressure: bool

@dataclass
class FailedItem(Generic[T]):
    """Result slot of an item whose retries were exhausted"""
    error: Exception
    item: T

def process_rss_mb() -> float:
    """Peak resident size of this process, 0.0 where the platform does not report it"""
    if sys.platform == "win32":
        return 0.0
    # ru_maxrss is reported in kilobytes on Linux and bytes on macOS
    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return max_rss / (1024 * 1024) if sys.platform == "darwin" else max_rss / 1024

def get_system_metrics() -> SystemMetrics:
    """Read CPU count, system memory usage and process resident size"""
    cpu_count = os.cpu_count() or 1

    memory_usage_ratio = 0.0
    try:
        total_pages = os.sysconf("SC_PHYS_PAGES")
        available_pages = os.sysconf("SC_AVPHYS_PAGES")
        if total_pages > 0:
            memory_usage_ratio = (total_pages - available_pages) / total_pages
    except (ValueError, OSError, AttributeError):
        logger.debug("System memory statistics unavailable")

    rss_mb = process_rss_mb()

    return SystemMetrics(
        cpu_count=cpu_count,
        memory_usage_ratio=memory_usage_ratio,
        process_rss_mb=rss_mb,
        is_under_memory_pressure=memory_usage_ratio > MEMORY_PRESSURE_RATIO or rss_mb > MEMORY_PRESSURE_RSS_MB
    )

def calculate_optimal_concurrency(metrics: SystemMetrics, context: Union[ConcurrencyContext, str] = ConcurrencyContext.GENERAL) -> int:
    """
    Derive a concurrency limit from system resources and workload context

    Args:
        metrics: Current system metrics
        context: Workload context, each with its own cap

    Returns:
        int: Concurrency limit, never below 2
    """
    concurrency = max(3, math.ceil(metrics.cpu_count * 0.8))

    if metrics.is_under_memory_pressure:
        concurrency = max(2, math.floor(concurrency * 0.6))

    cap = CONTEXT_CONCURRENCY_CAPS.get(_as_context(context), CONTEXT_CONCURRENCY_CAPS[ConcurrencyContext.GENERAL])
    return max(2, min(concurrency, cap))

def get_retry_policy(context: Union[ConcurrencyContext, str], error: Optional[BaseException] = None) -> RetryPolicy:
    """Select the retry policy for a context, using the rate-limit row when the error is one"""
    rate_limit_policy, default_policy = RETRY_POLICIES.get(
        _as_context(context), RETRY_POLICIES[ConcurrencyContext.GENERAL]
    )
    if error is not None and is_rate_limit_error(error):
        return rate_limit_policy
    return default_policy

def calculate_backoff_delay(
    attempt: int,
    base_delay: float,
    multiplier: float = 2.0,
    enable_jitter: bool = True,
    rng: Callable[[], float] = random.random
) -> float:
    """
    Exponential backoff with +/-10% jitter, clamped to [0.1s, 30s]

    Args:
        attempt: Zero-based attempt number
        base_delay: Base delay in seconds
        multiplier: Backoff multiplier
        enable_jitter: Apply random variation
        rng: Random source returning values in [0, 1)

    Returns:
        float: Delay in seconds
    """
    delay = base_delay * (multiplier ** attempt)
    if enable_jitter:
        jitter_range = delay * 0.1
        delay += (rng() - 0.5) * 2 * jitter_range
    return max(MIN_BACKOFF_DELAY, min(delay, MAX_BACKOFF_DELAY))

def separate_results(results: Sequence[Any]) -> Tuple[List[Any], List[FailedItem]]:
    """Split a mixed result list into successful values and tombstones"""
    successful = []
    failed = []
    for result in results:
        if isinstance(result, FailedItem):
            failed.append(result)
        else:
            successful.append(result)
    return successful, failed

def _as_context(context: Union[ConcurrencyContext, str]) -> Optional[ConcurrencyContext]:
    if isinstance(context, ConcurrencyContext):
        return context
    try:
        return ConcurrencyContext(context)
    except ValueError:
        return None

class ConcurrencyManager:
    """
    Runs independent async work items with a bounded, continuously refilled pool

    Results keep input order. An item whose retries are exhausted yields a
    ``FailedItem`` tombstone in its slot instead of failing the whole call.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics_provider: Callable[[], SystemMetrics] = get_system_metrics,
        enable_jitter: bool = True
    ):
        self._sleep = sleep
        self._metrics_provider = metrics_provider
        self.enable_jitter = enable_jitter

    def resolve_concurrency(self, concurrency_limit: Optional[int], context: Union[ConcurrencyContext, str]) -> int:
        if concurrency_limit is not None and concurrency_limit > 0:
            return concurrency_limit
        metrics = self._metrics_provider()
        limit = calculate_optimal_concurrency(metrics, context)
        logger.debug(
            f"Dynamic concurrency: {limit} (CPUs: {metrics.cpu_count}, "
            f"memory pressure: {metrics.is_under_memory_pressure})"
        )
        return limit

    async def process_concurrently_with_limit(
        self,
        items: Sequence[T],
        processor: Callable[[T], Awaitable[R]],
        concurrency_limit: Optional[int] = None,
        context: Union[ConcurrencyContext, str] = ConcurrencyContext.GENERAL,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_error: Optional[Callable[[Exception, T, int], None]] = None
    ) -> List[Union[R, FailedItem]]:
        """
        Process items concurrently with controlled parallelism and retry logic

        Args:
            items: Items to process
            processor: Coroutine function processing one item
            concurrency_limit: Explicit limit, computed from system load when omitted
            context: Workload context selecting the retry policy and concurrency cap
            max_retries: Explicit retry budget overriding the policy table
            retry_delay: Minimum base delay in seconds
            on_progress: Called with (completed, total) after every item
            on_error: Called with (error, item, retry_number) before each retry

        Returns:
            Results in input order, with FailedItem tombstones for exhausted items
        """
        total = len(items)
        results: List[Union[R, FailedItem]] = [None] * total
        if total == 0:
            return results

        limit = self.resolve_concurrency(concurrency_limit, context)
        semaphore = asyncio.Semaphore(limit)
        completed = 0

        logger.debug(f"Processing {total} items with limit {limit} (context: {_context_label(context)})")

        async def run(index: int, item: T) -> None:
            nonlocal completed
            async with semaphore:
                try:
                    results[index] = await self.process_with_retry(
                        item, processor, context, max_retries, retry_delay, on_error
                    )
                except AuthenticationError:
                    raise
                except Exception as e:
                    logger.debug(f"Item {index + 1}/{total} failed after retries: {e}")
                    results[index] = FailedItem(error=e, item=item)
                finally:
                    completed += 1
                    if on_progress:
                        on_progress(completed, total)

        await asyncio.gather(*(run(index, item) for index, item in enumerate(items)))
        return results

    async def process_with_retry(
        self,
        item: T,
        processor: Callable[[T], Awaitable[R]],
        context: Union[ConcurrencyContext, str] = ConcurrencyContext.GENERAL,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        on_error: Optional[Callable[[Exception, T, int], None]] = None
    ) -> R:
        """
        Process one item, retrying failures with context-aware backoff

        Raises:
            The last error once the retry budget is exhausted
        """
        attempt = 0
        while True:
            try:
                return await processor(item)
            except AuthenticationError:
                raise
            except Exception as e:
                policy = get_retry_policy(context, e)
                budget = max_retries if max_retries is not None else policy.max_retries
                if attempt >= budget:
                    raise

                base_delay = max(retry_delay or 0.0, policy.base_delay)
                delay = calculate_backoff_delay(attempt, base_delay, policy.multiplier, self.enable_jitter)

                if on_error:
                    on_error(e, item, attempt + 1)

                logger.info(f"Retry {attempt + 1}/{budget} after {delay:.2f}s (context: {_context_label(context)})")
                await self._sleep(delay)
                attempt += 1

def _context_label(context: Union[ConcurrencyContext, str]) -> str:
    return context.value if isinstance(context, ConcurrencyContext) else str(context)

__all__ = [
    "ConcurrencyContext",
    "ConcurrencyManager",
    "FailedItem",
    "RetryPolicy",
    "RETRY_POLICIES",
    "SystemMetrics",
    "calculate_backoff_delay",
    "calculate_optimal_concurrency",
    "get_retry_policy",
    "get_system_metrics",
    "process_rss_mb",
    "separate_results",
]
