"""
Rate-limited inference client for Mindmap Agent
One instance is shared by every service in a pipeline run: all prompts go through
its FIFO queue, its concurrency cap and its rate-limit circuit breaker
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from ..errors import (
    AuthenticationError,
    InferenceError,
    MindmapError,
    RateLimitError,
    is_authentication_error,
    is_rate_limit_error,
)

logger = logging.getLogger(__name__)

InferenceBackend = Callable[[str], Awaitable[str]]

@dataclass
class QueueItem:
    """Pending inference call"""
    id: str
    prompt: str
    context: str
    future: asyncio.Future
    timestamp: float
    operation: Optional[str] = None
    retry_count: int = 0

@dataclass
class QueueStatus:
    """Snapshot of the dispatch queue for monitoring"""
    queue_length: int
    active_requests: int
    total_queued: int
    total_processed: int
    total_failed: int
    average_wait_time: float
    max_queue_length: int
    is_processing: bool
    circuit_breaker_active: bool

@dataclass
class ContextMetrics:
    """Per-context call aggregation (observability only)"""
    calls: int = 0
    total_time: float = 0.0
    errors: int = 0

    @property
    def average_time(self) -> float:
        return self.total_time / self.calls if self.calls else 0.0

class InferenceClient:
    """
    Global FIFO queue in front of the inference backend

    A background dispatch loop starts a queued call whenever fewer than
    ``max_concurrency`` calls are in flight and at least ``min_request_interval``
    seconds have passed since the previous dispatch. Rate-limited calls are
    retried after 2s, 4s and 8s from the front of the queue; five consecutive
    rate-limit failures pause all dispatch for 30 seconds.
    """

    MAX_RATE_LIMIT_RETRIES = 3
    CIRCUIT_BREAKER_THRESHOLD = 5
    CIRCUIT_BREAKER_COOLDOWN = 30.0
    CIRCUIT_BREAKER_POLL = 1.0
    IDLE_POLL_INTERVAL = 0.05

    def __init__(
        self,
        backend: InferenceBackend,
        max_concurrency: int = 5,
        min_request_interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize the inference client

        Args:
            backend: Coroutine function sending one prompt and returning raw text
            max_concurrency: Maximum calls in flight at once
            min_request_interval: Minimum seconds between two dispatches
            clock: Time source in seconds
            sleep: Sleep coroutine used for polling and backoff
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self._backend = backend
        self.max_concurrency = max_concurrency
        self.min_request_interval = min_request_interval
        self._clock = clock
        self._sleep = sleep

        self._queue: Deque[QueueItem] = deque()
        self._active = 0
        self._last_dispatch: Optional[float] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._total_queued = 0
        self._total_processed = 0
        self._total_failed = 0
        self._total_wait_time = 0.0
        self._max_queue_length = 0
        self._consecutive_rate_limit_errors = 0
        self._circuit_breaker_until = 0.0

        self._context_metrics: Dict[str, ContextMetrics] = {}

    async def call(self, prompt: str, context: str = "general", operation: Optional[str] = None) -> str:
        """
        Queue a prompt and wait for its raw text response

        Args:
            prompt: Prompt text
            context: Caller tag used for metrics aggregation
            operation: Optional finer-grained label for logging

        Returns:
            str: Raw model output

        Raises:
            AuthenticationError: Credentials were rejected
            RateLimitError: Rate-limit retries were exhausted
            InferenceError: Any other backend failure
        """
        loop = asyncio.get_running_loop()
        item = QueueItem(
            id=uuid.uuid4().hex[:12],
            prompt=prompt,
            context=context,
            operation=operation,
            future=loop.create_future(),
            timestamp=self._clock()
        )

        self._queue.append(item)
        self._total_queued += 1
        self._max_queue_length = max(self._max_queue_length, len(self._queue))
        self._ensure_dispatcher()

        if self._total_queued % 10 == 0:
            self._log_queue_status()

        return await item.future

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    def is_circuit_open(self) -> bool:
        return self._clock() < self._circuit_breaker_until

    async def _dispatch_loop(self) -> None:
        while self._queue or self._active > 0:
            now = self._clock()

            if now < self._circuit_breaker_until:
                logger.warning("Inference circuit breaker active, pausing dispatch")
                await self._sleep(min(self.CIRCUIT_BREAKER_POLL, self._circuit_breaker_until - now))
                continue

            interval_passed = (
                self._last_dispatch is None
                or now - self._last_dispatch >= self.min_request_interval
            )
            if self._queue and self._active < self.max_concurrency and interval_passed:
                item = self._queue.popleft()
                self._active += 1
                self._last_dispatch = now
                logger.debug(f"Dispatching {item.context} call | active: {self._active}, queue: {len(self._queue)}")

                task = asyncio.create_task(self._process_request(item))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                await self._sleep(self.IDLE_POLL_INTERVAL)

        logger.debug(f"Inference queue drained | processed: {self._total_processed}, failed: {self._total_failed}")

    async def _process_request(self, item: QueueItem) -> None:
        start_time = self._clock()
        metrics = self._context_metrics.setdefault(item.context, ContextMetrics())

        try:
            result = await self._backend(item.prompt)
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            metrics.errors += 1
            self._handle_request_error(item, e)
        else:
            duration = self._clock() - start_time
            self._total_processed += 1
            self._total_wait_time += start_time - item.timestamp
            self._consecutive_rate_limit_errors = 0
            metrics.calls += 1
            metrics.total_time += duration

            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1

    def _handle_request_error(self, item: QueueItem, error: Exception) -> None:
        message = str(error)

        if is_authentication_error(error):
            self._reject(item, error if isinstance(error, AuthenticationError) else AuthenticationError(message))
            return

        if not is_rate_limit_error(error):
            if isinstance(error, MindmapError):
                self._reject(item, error)
            else:
                self._reject(item, InferenceError(f"Inference call failed ({item.context}): {message}", item.context))
            return

        self._consecutive_rate_limit_errors += 1
        logger.warning(f"Rate limit detected for {item.context}: {message}")

        if self._consecutive_rate_limit_errors >= self.CIRCUIT_BREAKER_THRESHOLD:
            self._circuit_breaker_until = self._clock() + self.CIRCUIT_BREAKER_COOLDOWN
            logger.error(f"Inference circuit breaker activated for {self.CIRCUIT_BREAKER_COOLDOWN:.0f}s")

        if item.retry_count < self.MAX_RATE_LIMIT_RETRIES:
            item.retry_count += 1
            delay = float(2 ** item.retry_count)
            logger.warning(f"Retrying {item.context} call in {delay:.0f}s (attempt {item.retry_count}/{self.MAX_RATE_LIMIT_RETRIES})")

            task = asyncio.create_task(self._requeue_after(item, delay))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        self._reject(
            item,
            RateLimitError(
                f"Rate limit retries exhausted after {self.MAX_RATE_LIMIT_RETRIES} attempts: {message}",
                item.context
            )
        )

    async def _requeue_after(self, item: QueueItem, delay: float) -> None:
        await self._sleep(delay)
        self._queue.appendleft(item)
        self._ensure_dispatcher()

    def _reject(self, item: QueueItem, error: Exception) -> None:
        self._total_failed += 1
        logger.debug(f"Inference call {item.id} ({item.context}) failed: {error}")
        if not item.future.done():
            item.future.set_exception(error)

    def get_queue_status(self) -> QueueStatus:
        """Return a snapshot of the dispatch queue"""
        return QueueStatus(
            queue_length=len(self._queue),
            active_requests=self._active,
            total_queued=self._total_queued,
            total_processed=self._total_processed,
            total_failed=self._total_failed,
            average_wait_time=self._total_wait_time / self._total_processed if self._total_processed else 0.0,
            max_queue_length=self._max_queue_length,
            is_processing=self._dispatcher is not None and not self._dispatcher.done(),
            circuit_breaker_active=self.is_circuit_open()
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Return call count, latency and error aggregation by context"""
        total_calls = sum(m.calls for m in self._context_metrics.values())
        total_time = sum(m.total_time for m in self._context_metrics.values())
        return {
            "total_calls": total_calls,
            "total_time": total_time,
            "average_time": total_time / total_calls if total_calls else 0.0,
            "errors": sum(m.errors for m in self._context_metrics.values()),
            "by_context": {
                context: {
                    "calls": m.calls,
                    "total_time": m.total_time,
                    "average_time": m.average_time,
                    "errors": m.errors
                }
                for context, m in self._context_metrics.items()
            }
        }

    def reset_metrics(self) -> None:
        self._context_metrics.clear()

    def _log_queue_status(self) -> None:
        status = self.get_queue_status()
        logger.info(
            f"Inference queue | active: {status.active_requests}/{self.max_concurrency}, "
            f"queue: {status.queue_length}, processed: {status.total_processed}/{status.total_queued}"
            f"{', circuit breaker active' if status.circuit_breaker_active else ''}"
        )

    async def close(self) -> None:
        """Stop dispatching and cancel in-flight work"""
        pending = list(self._tasks)
        if self._dispatcher is not None:
            pending.append(self._dispatcher)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.cancel()

__all__ = ["InferenceClient", "InferenceBackend", "QueueItem", "QueueStatus", "ContextMetrics"]
