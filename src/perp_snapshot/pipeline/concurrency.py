from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[T]]


@dataclass(frozen=True, slots=True)
class TaskResult(Generic[T]):
    ok: bool
    value: T | None = None
    error: Exception | None = None


class BoundedConcurrencyExecutor:
    """Run task factories with at most ``limit`` in flight.

    Every factory is called at most once, inside the semaphore. Failures become
    ``TaskResult(ok=False)`` and never cancel siblings. Results are returned in
    completion order, so callers correlate by a key carried in the value.
    """

    def __init__(self, default_limit: int = 16) -> None:
        self._default_limit = max(1, default_limit)
        self._peak_in_flight = 0

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    async def run_all(self, factories: Sequence[TaskFactory[T]], limit: int | None = None) -> list[TaskResult[T]]:
        if not factories:
            return []

        semaphore = asyncio.Semaphore(max(1, limit or self._default_limit))
        results: list[TaskResult[T]] = []
        in_flight = 0
        peak = 0

        async def run_one(factory: TaskFactory[T]) -> None:
            nonlocal in_flight, peak
            async with semaphore:
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    value = await factory()
                except Exception as exc:
                    logger.debug("Bounded task failed", extra={"error": repr(exc)})
                    results.append(TaskResult(ok=False, error=exc))
                else:
                    results.append(TaskResult(ok=True, value=value))
                finally:
                    in_flight -= 1

        tasks = [asyncio.ensure_future(run_one(factory)) for factory in factories]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            self._peak_in_flight = peak
        return results
