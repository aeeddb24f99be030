from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar, cast

from agentrun.config.schema import MAX_CONCURRENCY, AgentConfig, TaskSpec
from agentrun.exec.cancel import KILL_GRACE_SEC, CancelToken
from agentrun.exec.events import StepResult
from agentrun.exec.worker import run_step

T = TypeVar("T")
R = TypeVar("R")


async def map_concurrent(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run ``fn`` over ``items`` with at most ``limit`` in flight.

    Workers claim the next index from a shared cursor; results are stored at
    the item's index, so output order matches input order.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    results: list[R | None] = [None] * len(items)
    cursor = 0

    async def _worker() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await fn(items[index], index)

    await asyncio.gather(*(_worker() for _ in range(min(limit, len(items)))))
    return cast(list[R], results)


@dataclass(slots=True)
class FanOutOutcome:
    results: list[StepResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.exit_code == 0)

    def summary(self) -> str:
        return f"{self.succeeded}/{len(self.results)} succeeded"


async def run_parallel(
    worker_cmd: list[str],
    tasks: Sequence[tuple[TaskSpec, AgentConfig]],
    *,
    default_cwd: Path,
    cancel: CancelToken | None = None,
    concurrency: int = MAX_CONCURRENCY,
    kill_grace_sec: float = KILL_GRACE_SEC,
) -> FanOutOutcome:
    async def _run(item: tuple[TaskSpec, AgentConfig], _index: int) -> StepResult:
        spec, agent = item
        return await run_step(
            worker_cmd,
            agent,
            spec.task,
            cwd=resolve_cwd(spec.cwd, default_cwd),
            cancel=cancel,
            kill_grace_sec=kill_grace_sec,
        )

    results = await map_concurrent(tasks, concurrency, _run)
    return FanOutOutcome(results=results)


def resolve_cwd(task_cwd: str | None, default_cwd: Path) -> Path:
    if task_cwd is None:
        return default_cwd
    cwd = Path(task_cwd)
    if cwd.is_absolute():
        return cwd
    return default_cwd / cwd
