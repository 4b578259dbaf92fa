"""
Batch processor for inference requests
Per-type priority queues flushed by size or age into single inference calls,
with adaptive batch sizing, per-type circuit breakers and result demultiplexing
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ..errors import BatchResultNotFoundError, CircuitOpenError, InferenceError, MindmapError
from ..llm.json_extractor import extract_model, log_extraction_failure
from ..models import BatchSimilarityResponse, generate_id
from ..prompts import MindmapPrompts as prompts
from ..utils.concurrency import get_system_metrics
from .adaptive import AdaptiveBatchingController, SystemLoad
from .strategies import BATCH_STRATEGIES, GROUPING_STRATEGIES, BatchRequestType, dispatch_order, select_group

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Result not found in batch response"


@dataclass
class BatchItemResult:
    """Demultiplexed outcome for one caller of a batch"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    not_found: bool = False


@dataclass
class QueuedRequest:
    """Pending request waiting for its batch"""
    id: str
    request_type: BatchRequestType
    payload: Dict[str, Any]
    priority: int
    timestamp: float
    future: asyncio.Future


@dataclass
class BatchRecord:
    """History entry of one dispatched batch"""
    id: str
    request_type: BatchRequestType
    size: int
    created_at: datetime
    status: str = "processing"
    latency: float = 0.0


@dataclass
class CircuitState:
    failures: int = 0
    last_failure: float = 0.0
    is_open: bool = False


BatchExecutor = Callable[[List[Dict[str, Any]]], Awaitable[List[BatchItemResult]]]


class BatchProcessor:
    """
    Collects inference requests per type and submits them in batches

    A background tick every ``tick_interval`` seconds flushes each type's queue
    once it reaches the strategy's flush size or its oldest item exceeds the
    strategy's timeout. Three consecutive hard batch failures for a type open
    that type's circuit for 30 seconds, during which new requests fail fast.
    """

    CIRCUIT_BREAKER_THRESHOLD = 3
    CIRCUIT_BREAKER_COOLDOWN = 30.0
    HISTORY_LIMIT = 100

    def __init__(
        self,
        inference,
        adaptive_controller: Optional[AdaptiveBatchingController] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = 0.1,
        auto_start: bool = True,
        load_provider: Optional[Callable[[BatchRequestType], Optional[SystemLoad]]] = None
    ):
        """
        Initialize the batch processor

        Args:
            inference: Shared InferenceClient (anything with ``async call(prompt, context)``)
            adaptive_controller: Batch size controller, a private one when omitted
            clock: Time source in seconds
            tick_interval: Seconds between queue evaluations
            auto_start: Start the background tick on the first request
            load_provider: Returns current SystemLoad for a request type
        """
        self.inference = inference
        self.adaptive = adaptive_controller or AdaptiveBatchingController(clock=clock)
        self._clock = clock
        self.tick_interval = tick_interval
        self.auto_start = auto_start
        self._load_provider = load_provider or self._current_load

        self._queues: Dict[BatchRequestType, List[QueuedRequest]] = {t: [] for t in BatchRequestType}
        self._processing: Set[BatchRequestType] = set()
        self._circuits: Dict[BatchRequestType, CircuitState] = {t: CircuitState() for t in BatchRequestType}
        self._executors: Dict[BatchRequestType, BatchExecutor] = {
            t: self._execute_individually for t in BatchRequestType
        }
        self._executors[BatchRequestType.SIMILARITY_CHECK] = self._execute_similarity_batch

        self._ticker: Optional[asyncio.Task] = None
        self._batch_tasks: Set[asyncio.Task] = set()
        self.batch_history: List[BatchRecord] = []
        self._closed = False

    def register_executor(self, request_type: BatchRequestType, executor: BatchExecutor) -> None:
        """Replace the executor used to submit batches of one request type"""
        self._executors[request_type] = executor

    async def add(self, request_type: BatchRequestType, payload: Dict[str, Any], priority: int = 0) -> Any:
        """
        Queue one request and wait for its demultiplexed result

        Args:
            request_type: Kind of request, selects strategy and executor
            payload: Request payload understood by the type's executor
            priority: Higher priorities are batched first, ties keep arrival order

        Returns:
            The caller's result from the batch

        Raises:
            CircuitOpenError: The type's circuit breaker is open
            BatchResultNotFoundError: The batch response held no result for this request
            MindmapError: The whole batch failed
        """
        return await self.submit(request_type, payload, priority)

    def submit(self, request_type: BatchRequestType, payload: Dict[str, Any], priority: int = 0) -> asyncio.Future:
        """Queue one request without waiting; the returned future resolves with its result"""
        if self._closed:
            raise MindmapError("Batch processor is closed")
        self._check_circuit(request_type)

        request = QueuedRequest(
            id=generate_id("req"),
            request_type=request_type,
            payload=payload,
            priority=priority,
            timestamp=self._clock(),
            future=asyncio.get_running_loop().create_future()
        )
        self._enqueue(request)

        if self.auto_start:
            self._ensure_ticker()

        return request.future

    async def add_batch(
        self,
        request_type: BatchRequestType,
        payloads: Sequence[Dict[str, Any]],
        priority: int = 0
    ) -> List[Any]:
        """Queue many requests of one type; any caller failure propagates"""
        return await asyncio.gather(*(self.add(request_type, payload, priority) for payload in payloads))

    def _enqueue(self, request: QueuedRequest) -> None:
        queue = self._queues[request.request_type]
        position = len(queue)
        for index, queued in enumerate(queue):
            if queued.priority < request.priority:
                position = index
                break
        queue.insert(position, request)

    def _check_circuit(self, request_type: BatchRequestType) -> None:
        circuit = self._circuits[request_type]
        if not circuit.is_open:
            return

        elapsed = self._clock() - circuit.last_failure
        if elapsed < self.CIRCUIT_BREAKER_COOLDOWN:
            raise CircuitOpenError(
                f"Circuit breaker open for {request_type.value}",
                retry_after=self.CIRCUIT_BREAKER_COOLDOWN - elapsed
            )

        logger.info(f"Circuit breaker reset for {request_type.value}")
        circuit.is_open = False
        circuit.failures = 0

    def is_circuit_open(self, request_type: BatchRequestType) -> bool:
        circuit = self._circuits[request_type]
        return circuit.is_open and self._clock() - circuit.last_failure < self.CIRCUIT_BREAKER_COOLDOWN

    def _ensure_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while not self._closed and (self._has_pending() or self._processing):
            self.check_queues()
            await asyncio.sleep(self.tick_interval)

    def _has_pending(self) -> bool:
        return any(self._queues.values())

    def check_queues(self) -> int:
        """
        Evaluate every queue against its flush policy and dispatch due batches

        Returns:
            int: Number of batches dispatched
        """
        dispatched = 0
        for request_type in dispatch_order():
            if self._dispatch_if_due(request_type, force=False):
                dispatched += 1
        return dispatched

    def _dispatch_if_due(self, request_type: BatchRequestType, force: bool) -> bool:
        queue = self._queues[request_type]
        if not queue or request_type in self._processing:
            return False

        strategy = BATCH_STRATEGIES[request_type]
        oldest_age = self._clock() - min(request.timestamp for request in queue)
        if not force and not strategy.should_flush(len(queue), oldest_age):
            return False

        batch = self._extract_batch(request_type)
        self._processing.add(request_type)
        task = asyncio.create_task(self._run_batch(request_type, batch))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)
        return True

    def _extract_batch(self, request_type: BatchRequestType) -> List[QueuedRequest]:
        queue = self._queues[request_type]
        size = self.adaptive.get_optimal_batch_size(request_type, self._load_provider(request_type))
        size = max(1, min(size, len(queue)))

        grouping = GROUPING_STRATEGIES.get(request_type)
        if grouping is not None:
            batch = select_group(queue, size, lambda request: grouping(request.payload))
        else:
            batch = queue[:size]

        taken = {request.id for request in batch}
        self._queues[request_type] = [request for request in queue if request.id not in taken]
        return batch

    async def _run_batch(self, request_type: BatchRequestType, batch: List[QueuedRequest]) -> None:
        record = BatchRecord(
            id=generate_id("batch"),
            request_type=request_type,
            size=len(batch),
            created_at=datetime.now()
        )
        self._record(record)
        start_time = self._clock()
        circuit = self._circuits[request_type]

        logger.debug(f"Processing {request_type.value} batch {record.id} with {len(batch)} requests")

        try:
            results = await self._executors[request_type]([request.payload for request in batch])
        except Exception as e:
            record.latency = self._clock() - start_time
            record.status = "failed"
            self.adaptive.update_metrics(request_type, len(batch), False, record.latency)

            circuit.failures += 1
            circuit.last_failure = self._clock()
            if circuit.failures >= self.CIRCUIT_BREAKER_THRESHOLD:
                circuit.is_open = True
                logger.error(f"Circuit breaker opened for {request_type.value} after {circuit.failures} failures")

            logger.error(f"Batch {record.id} ({request_type.value}) failed: {e}")
            error = e if isinstance(e, MindmapError) else InferenceError(f"Batch processing failed: {e}", request_type.value)
            for request in batch:
                if not request.future.done():
                    request.future.set_exception(error)
            return
        finally:
            self._processing.discard(request_type)

        record.latency = self._clock() - start_time
        record.status = "completed"
        circuit.failures = 0

        if len(results) != len(batch):
            logger.warning(
                f"Batch {record.id} returned {len(results)} results for {len(batch)} requests"
            )

        all_succeeded = len(results) == len(batch) and all(result.success for result in results)
        self.adaptive.update_metrics(request_type, len(batch), all_succeeded, record.latency)

        for index, request in enumerate(batch):
            if request.future.done():
                continue
            result = results[index] if index < len(results) else BatchItemResult(False, error=NOT_FOUND_MESSAGE, not_found=True)
            if result.success:
                request.future.set_result(result.data)
            elif result.not_found:
                request.future.set_exception(BatchResultNotFoundError(result.error or NOT_FOUND_MESSAGE))
            else:
                request.future.set_exception(InferenceError(result.error or "Batch item failed", request_type.value))

    def _record(self, record: BatchRecord) -> None:
        self.batch_history.append(record)
        if len(self.batch_history) > self.HISTORY_LIMIT:
            del self.batch_history[:-self.HISTORY_LIMIT]

    async def _execute_similarity_batch(self, payloads: List[Dict[str, Any]]) -> List[BatchItemResult]:
        """Fold all similarity pairs into one inference call and match results by pair id"""
        pairs = [
            {"pairId": str(index), "theme1": payload["theme1"], "theme2": payload["theme2"]}
            for index, payload in enumerate(payloads)
        ]
        response = await self.inference.call(prompts.batch_similarity_prompt(pairs), context="batch_similarity")

        extraction = extract_model(response, BatchSimilarityResponse)
        if not extraction.success:
            log_extraction_failure(extraction, "Batch similarity")
            return [BatchItemResult(False, error=f"Unparseable batch response: {extraction.error}") for _ in payloads]

        parsed: BatchSimilarityResponse = extraction.data
        if len(parsed.results) != len(payloads):
            logger.warning(f"Batch similarity count mismatch: expected {len(payloads)}, got {len(parsed.results)}")

        by_pair_id = {result.pair_id: result for result in parsed.results}
        results = []
        for pair in pairs:
            match = by_pair_id.get(pair["pairId"])
            if match is None:
                results.append(BatchItemResult(False, error=NOT_FOUND_MESSAGE, not_found=True))
            else:
                results.append(BatchItemResult(True, data=match))
        return results

    async def _execute_individually(self, payloads: List[Dict[str, Any]]) -> List[BatchItemResult]:
        """One inference call per payload for types without a combined prompt"""
        async def run(payload: Dict[str, Any]) -> BatchItemResult:
            try:
                response = await self.inference.call(payload["prompt"], context=payload.get("context", "batch_item"))
                return BatchItemResult(True, data=response)
            except MindmapError as e:
                return BatchItemResult(False, error=str(e))

        return list(await asyncio.gather(*(run(payload) for payload in payloads)))

    def _current_load(self, request_type: BatchRequestType) -> SystemLoad:
        cpu_usage = 0.0
        if hasattr(os, "getloadavg"):
            cpu_usage = min(100.0, os.getloadavg()[0] / (os.cpu_count() or 1) * 100)

        metrics = get_system_metrics()
        state = self.adaptive.get_state(request_type)
        return SystemLoad(
            cpu_usage=cpu_usage,
            memory_usage=metrics.memory_usage_ratio * 100,
            api_response_time=state.avg_latency if state else 0.0,
            queue_depth=sum(len(queue) for queue in self._queues.values()),
            time_of_day=datetime.now().hour
        )

    async def flush(self) -> None:
        """Dispatch every queued request regardless of flush policy and wait for completion"""
        while self._has_pending() or self._batch_tasks:
            for request_type in dispatch_order():
                self._dispatch_if_due(request_type, force=True)
            if self._batch_tasks:
                await asyncio.gather(*list(self._batch_tasks), return_exceptions=True)

    def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        now = self._clock()
        return {
            request_type.value: {
                "queue_size": len(queue),
                "oldest_item_age": now - min(r.timestamp for r in queue) if queue else 0.0,
                "is_processing": request_type in self._processing,
                "circuit_open": self.is_circuit_open(request_type),
                "optimal_batch_size": self.adaptive.get_optimal_batch_size(request_type),
            }
            for request_type, queue in self._queues.items()
        }

    async def close(self) -> None:
        """Stop the tick and reject anything still queued"""
        self._closed = True
        pending = list(self._batch_tasks)
        if self._ticker is not None:
            pending.append(self._ticker)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for queue in self._queues.values():
            for request in queue:
                if not request.future.done():
                    request.future.set_exception(MindmapError("Batch processor closed"))
            queue.clear()


__all__ = [
    "BatchProcessor",
    "BatchItemResult",
    "BatchRecord",
    "BatchExecutor",
    "QueuedRequest",
    "NOT_FOUND_MESSAGE",
]
