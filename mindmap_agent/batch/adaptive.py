"""
Adaptive batch sizing
Batch sizes per request type follow exponential moving averages of latency and
success rate, then get scaled by current system load before use
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .strategies import BatchRequestType, get_strategy

logger = logging.getLogger(__name__)

INITIAL_BATCH_SIZE = 5
SMOOTHING_FACTOR = 0.2
ADJUSTMENT_COOLDOWN = 60.0
TARGET_SUCCESS_RATE = 0.95
TARGET_LATENCY = 3.0
MAX_LATENCY = 10.0

DEFAULT_CONSTRAINTS = (1, 10)

@dataclass
class AdaptiveState:
    """Rolling performance figures for one request type"""
    current_batch_size: int
    success_rate: float
    avg_latency: float
    error_rate: float
    throughput: float
    last_adjustment: float

@dataclass
class SystemLoad:
    """Load signals that scale the adaptive batch size"""
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    api_response_time: float = 0.0
    queue_depth: int = 0
    time_of_day: int = 12

def get_batch_constraints(request_type) -> Tuple[int, int]:
    """(min, max) batch size from the request type's strategy"""
    strategy = get_strategy(request_type)
    if strategy is None:
        return DEFAULT_CONSTRAINTS
    return strategy.min_batch_size, strategy.max_batch_size

def adjust_for_system_load(base_size: int, load: SystemLoad) -> int:
    """
    Scale a batch size by system load

    Args:
        base_size: Adaptive batch size
        load: Current load signals (percentages, seconds, queue depth, hour)

    Returns:
        int: Scaled size, at least 1
    """
    factor = 1.0

    if load.cpu_usage > 80 or load.memory_usage > 85:
        factor *= 0.7
    elif load.cpu_usage > 60 or load.memory_usage > 70:
        factor *= 0.85

    if load.api_response_time > 5.0:
        factor *= 0.8

    if load.queue_depth > 100:
        factor *= 0.75

    if 9 <= load.time_of_day <= 17:
        factor *= 0.9
    else:
        factor *= 1.1

    return max(1, round(base_size * factor))

class AdaptiveBatchingController:
    """Tunes batch sizes per request type from observed batch outcomes"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, cooldown: float = ADJUSTMENT_COOLDOWN):
        self._clock = clock
        self.cooldown = cooldown
        self._states: Dict[BatchRequestType, AdaptiveState] = {}
        self.reset()

    def reset(self) -> None:
        now = self._clock()
        self._states = {
            request_type: AdaptiveState(
                current_batch_size=INITIAL_BATCH_SIZE,
                success_rate=1.0,
                avg_latency=0.0,
                error_rate=0.0,
                throughput=0.0,
                last_adjustment=now
            )
            for request_type in BatchRequestType
        }

    def get_state(self, request_type: BatchRequestType) -> Optional[AdaptiveState]:
        return self._states.get(request_type)

    def get_optimal_batch_size(self, request_type: BatchRequestType, load: Optional[SystemLoad] = None) -> int:
        state = self._states.get(request_type)
        if state is None:
            return INITIAL_BATCH_SIZE
        if load is not None:
            return adjust_for_system_load(state.current_batch_size, load)
        return state.current_batch_size

    def update_metrics(self, request_type: BatchRequestType, batch_size: int, success: bool, latency: float) -> None:
        """
        Fold one batch outcome into the moving averages

        Args:
            request_type: Request type of the batch
            batch_size: Number of items in the batch
            success: Whether every item succeeded
            latency: Batch latency in seconds
        """
        state = self._states.get(request_type)
        if state is None:
            return

        alpha = SMOOTHING_FACTOR
        outcome = 1.0 if success else 0.0
        state.avg_latency = state.avg_latency * (1 - alpha) + latency * alpha
        state.success_rate = state.success_rate * (1 - alpha) + outcome * alpha
        state.error_rate = state.error_rate * (1 - alpha) + (1 - outcome) * alpha

        items_per_second = batch_size / latency if latency > 0 else float(batch_size)
        state.throughput = state.throughput * (1 - alpha) + items_per_second * alpha

        if self._clock() - state.last_adjustment > self.cooldown:
            self._adjust_batch_size(request_type, state)

    def _adjust_batch_size(self, request_type: BatchRequestType, state: AdaptiveState) -> None:
        new_size = state.current_batch_size

        if state.success_rate < TARGET_SUCCESS_RATE:
            new_size = max(1, math.floor(state.current_batch_size * 0.8))
        elif state.avg_latency > MAX_LATENCY:
            new_size = max(1, math.floor(state.current_batch_size * 0.7))
        elif state.success_rate > TARGET_SUCCESS_RATE and state.avg_latency < TARGET_LATENCY:
            new_size = math.ceil(state.current_batch_size * 1.2)

        minimum, maximum = get_batch_constraints(request_type)
        new_size = max(minimum, min(maximum, new_size))

        if new_size != state.current_batch_size:
            logger.info(
                f"Adjusting {request_type.value} batch size: {state.current_batch_size} -> {new_size} "
                f"(success: {state.success_rate:.1%}, latency: {state.avg_latency:.2f}s)"
            )
            state.current_batch_size = new_size
            state.last_adjustment = self._clock()

    def set_batch_size(self, request_type: BatchRequestType, size: int) -> None:
        state = self._states.get(request_type)
        if state is not None:
            state.current_batch_size = size
            state.last_adjustment = self._clock()

    def get_performance_report(self) -> Dict[str, Dict[str, float]]:
        return {
            request_type.value: {
                "current_batch_size": state.current_batch_size,
                "success_rate": state.success_rate,
                "avg_latency": state.avg_latency,
                "error_rate": state.error_rate,
                "throughput": state.throughput,
            }
            for request_type, state in self._states.items()
        }

__all__ = [
    "AdaptiveBatchingController",
    "AdaptiveState",
    "SystemLoad",
    "adjust_for_system_load",
    "get_batch_constraints",
]
