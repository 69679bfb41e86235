from __future__ import annotations

import asyncio

from perp_snapshot.pipeline.concurrency import BoundedConcurrencyExecutor


def test_executor_never_exceeds_limit_and_returns_every_result() -> None:
    in_flight = 0
    observed_peak = 0
    calls: list[int] = []

    def make(index: int):
        async def task() -> int:
            nonlocal in_flight, observed_peak
            calls.append(index)
            in_flight += 1
            observed_peak = max(observed_peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return index

        return task

    executor = BoundedConcurrencyExecutor(default_limit=16)
    results = asyncio.run(executor.run_all([make(index) for index in range(20)], limit=4))

    assert len(results) == 20
    assert all(result.ok for result in results)
    assert sorted(result.value for result in results) == list(range(20))
    assert sorted(calls) == list(range(20))
    assert observed_peak <= 4
    assert executor.peak_in_flight == 4


def test_executor_captures_failures_without_cancelling_siblings() -> None:
    def make(index: int):
        async def task() -> int:
            await asyncio.sleep(0)
            if index % 3 == 0:
                raise ValueError(f"task {index} failed")
            return index

        return task

    results = asyncio.run(BoundedConcurrencyExecutor().run_all([make(index) for index in range(9)], limit=2))

    failures = [result for result in results if not result.ok]
    successes = [result for result in results if result.ok]
    assert len(results) == 9
    assert len(failures) == 3
    assert all(isinstance(result.error, ValueError) for result in failures)
    assert sorted(result.value for result in successes) == [1, 2, 4, 5, 7, 8]


def test_executor_with_no_factories_returns_empty() -> None:
    assert asyncio.run(BoundedConcurrencyExecutor().run_all([])) == []
