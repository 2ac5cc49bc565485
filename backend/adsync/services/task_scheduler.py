"""Concurrency-bounded task runner.

WHAT:
    Runs an async handler over a list of tasks with at most `limit` in
    flight at once and waits for all of them, collecting one outcome per
    task (result or exception).

WHY:
    - Meta throttles per ad account; a fixed cap keeps a tenant's dozens of
      report jobs from all polling at once.
    - Not fail-fast: each task is an independent, re-runnable unit, so one
      failure never cancels its siblings. The caller decides afterwards what
      the aggregate outcome means.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskOutcome(Generic[T, R]):
    task: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    tasks: Sequence[T],
    handler: Callable[[T], Awaitable[R]],
    *,
    limit: int,
) -> List[TaskOutcome[T, R]]:
    """Run `handler(task)` for every task, `limit` at a time.

    Returns outcomes in the same order as `tasks`. Ordering of execution is
    not guaranteed. `asyncio.CancelledError` is not captured, so cancelling
    the caller still cancels the run.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    semaphore = asyncio.Semaphore(limit)

    async def _run(task: T) -> TaskOutcome[T, R]:
        async with semaphore:
            started = time.monotonic()
            try:
                result = await handler(task)
                return TaskOutcome(task=task, result=result, duration_seconds=time.monotonic() - started)
            except Exception as exc:
                logger.warning("[SCHEDULER] Task %s failed: %s: %s", getattr(task, "label", task), type(exc).__name__, exc)
                return TaskOutcome(task=task, error=exc, duration_seconds=time.monotonic() - started)

    outcomes = await asyncio.gather(*(_run(task) for task in tasks))

    failed = sum(1 for o in outcomes if not o.ok)
    logger.info("[SCHEDULER] %d tasks finished (%d failed, limit=%d)", len(outcomes), failed, limit)
    return list(outcomes)
