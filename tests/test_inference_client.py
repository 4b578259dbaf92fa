import asyncio

import pytest

from mindmap_agent.errors import AuthenticationError, InferenceError, RateLimitError
from mindmap_agent.llm import InferenceClient


async def spin(condition, rounds: int = 200) -> None:
    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class GatedSleep:
    """Polling sleeps only yield; backoff sleeps of two seconds or more wait for the gate"""

    def __init__(self):
        self.gate = asyncio.Event()
        self.backoffs = []

    async def __call__(self, seconds: float) -> None:
        if seconds >= 2:
            self.backoffs.append(seconds)
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_calls_return_backend_output_and_track_metrics(clock):
    async def backend(prompt):
        await asyncio.sleep(0)
        return prompt.upper()

    client = InferenceClient(backend, max_concurrency=2, min_request_interval=0, clock=clock, sleep=clock.sleep)
    results = await asyncio.gather(
        client.call("one", context="similarity"),
        client.call("two", context="similarity"),
        client.call("three", context="domain"),
    )

    assert results == ["ONE", "TWO", "THREE"]
    metrics = client.get_metrics()
    assert metrics["total_calls"] == 3
    assert metrics["by_context"]["similarity"]["calls"] == 2
    assert metrics["by_context"]["domain"]["errors"] == 0

    status = client.get_queue_status()
    assert status.total_processed == 3
    assert status.queue_length == 0
    await client.close()


@pytest.mark.asyncio
async def test_concurrency_cap_is_never_exceeded(clock):
    active = 0
    peak = 0

    async def backend(prompt):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        for _ in range(3):
            await asyncio.sleep(0)
        active -= 1
        return prompt

    client = InferenceClient(backend, max_concurrency=2, min_request_interval=0, clock=clock, sleep=clock.sleep)
    await asyncio.gather(*(client.call(str(n)) for n in range(8)))

    assert peak == 2
    await client.close()


@pytest.mark.asyncio
async def test_rate_limited_call_is_retried_from_queue_front(clock):
    sleep = GatedSleep()
    release = asyncio.Event()
    attempts = []

    async def backend(prompt):
        attempts.append(prompt)
        if prompt == "A" and attempts.count("A") == 1:
            raise RuntimeError("429 Too Many Requests")
        if prompt == "B":
            await release.wait()
        return prompt.lower()

    client = InferenceClient(backend, max_concurrency=1, min_request_interval=0, clock=clock, sleep=sleep)

    task_a = asyncio.ensure_future(client.call("A"))
    await spin(lambda: attempts == ["A"])
    assert sleep.backoffs == [2.0]

    task_b = asyncio.ensure_future(client.call("B"))
    task_c = asyncio.ensure_future(client.call("C"))
    await spin(lambda: attempts == ["A", "B"])
    assert [item.prompt for item in client._queue] == ["C"]

    sleep.gate.set()
    await spin(lambda: len(client._queue) == 2)
    assert [item.prompt for item in client._queue] == ["A", "C"]

    release.set()
    assert await asyncio.gather(task_a, task_b, task_c) == ["a", "b", "c"]
    assert attempts == ["A", "B", "A", "C"]
    await client.close()


@pytest.mark.asyncio
async def test_rate_limit_retries_exhaust(clock):
    async def backend(prompt):
        raise RuntimeError("rate limit exceeded")

    client = InferenceClient(backend, max_concurrency=1, min_request_interval=0, clock=clock, sleep=clock.sleep)

    with pytest.raises(RateLimitError):
        await client.call("x", context="similarity")
    assert [delay for delay in clock.sleeps if delay >= 2] == [2.0, 4.0, 8.0]
    assert client.get_metrics()["by_context"]["similarity"]["errors"] == 4
    await client.close()


@pytest.mark.asyncio
async def test_five_consecutive_rate_limits_pause_dispatch(clock):
    sleep = GatedSleep()
    attempts = []

    async def backend(prompt):
        attempts.append(prompt)
        raise RuntimeError("rate limit exceeded")

    client = InferenceClient(backend, max_concurrency=5, min_request_interval=0, clock=clock, sleep=sleep)
    tasks = [asyncio.ensure_future(client.call(str(n))) for n in range(5)]
    await spin(lambda: len(attempts) == 5)

    assert client.is_circuit_open()
    assert client.get_queue_status().circuit_breaker_active

    tasks.append(asyncio.ensure_future(client.call("late")))
    for _ in range(20):
        await asyncio.sleep(0)
    assert len(attempts) == 5

    clock.advance(InferenceClient.CIRCUIT_BREAKER_COOLDOWN)
    await spin(lambda: len(attempts) == 6)
    assert attempts[-1] == "late"

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await client.close()


@pytest.mark.asyncio
async def test_authentication_errors_are_not_retried(clock):
    attempts = []

    async def backend(prompt):
        attempts.append(prompt)
        raise RuntimeError("401 Unauthorized: invalid api key")

    client = InferenceClient(backend, max_concurrency=1, min_request_interval=0, clock=clock, sleep=clock.sleep)

    with pytest.raises(AuthenticationError):
        await client.call("x")
    assert attempts == ["x"]
    assert all(delay < 2 for delay in clock.sleeps)
    await client.close()


@pytest.mark.asyncio
async def test_other_failures_become_inference_errors(clock):
    async def backend(prompt):
        raise ValueError("connection reset")

    client = InferenceClient(backend, max_concurrency=1, min_request_interval=0, clock=clock, sleep=clock.sleep)

    with pytest.raises(InferenceError) as excinfo:
        await client.call("x", context="naming")
    assert excinfo.value.context == "naming"
    assert client.get_queue_status().total_failed == 1
    await client.close()


@pytest.mark.asyncio
async def test_min_request_interval_spaces_dispatches(clock):
    dispatched = []

    async def backend(prompt):
        dispatched.append(clock())
        return prompt

    client = InferenceClient(backend, max_concurrency=5, min_request_interval=0.2, clock=clock, sleep=clock.sleep)
    await asyncio.gather(*(client.call(str(n)) for n in range(3)))

    gaps = [later - earlier for earlier, later in zip(dispatched, dispatched[1:])]
    assert all(gap >= 0.2 - 1e-9 for gap in gaps)
    await client.close()


def test_rejects_zero_concurrency():
    async def backend(prompt):
        return prompt

    with pytest.raises(ValueError):
        InferenceClient(backend, max_concurrency=0)
