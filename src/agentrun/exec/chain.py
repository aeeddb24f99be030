from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from agentrun.config.schema import PLACEHOLDER, AgentConfig, TaskSpec
from agentrun.exec.cancel import KILL_GRACE_SEC, CancelToken
from agentrun.exec.events import StepResult, final_output
from agentrun.exec.pool import resolve_cwd
from agentrun.exec.worker import run_step

ChainProgress = Callable[[list[StepResult], str], None]


def substitute_placeholder(task: str, previous: str, placeholder: str = PLACEHOLDER) -> str:
    """Replace every literal occurrence of ``placeholder``. No escaping."""
    return task.replace(placeholder, previous)


@dataclass(slots=True)
class ChainOutcome:
    results: list[StepResult]
    output: str
    failed: StepResult | None = None

    @property
    def ok(self) -> bool:
        return self.failed is None


async def run_chain(
    worker_cmd: list[str],
    steps: Sequence[tuple[TaskSpec, AgentConfig]],
    *,
    default_cwd: Path,
    cancel: CancelToken | None = None,
    on_progress: ChainProgress | None = None,
    placeholder: str = PLACEHOLDER,
    kill_grace_sec: float = KILL_GRACE_SEC,
) -> ChainOutcome:
    """Run steps in order, feeding each step's final output into the next.

    Stops at the first step with a nonzero exit code; later steps never run.
    """
    results: list[StepResult] = []
    previous = ""
    for spec, agent in steps:
        task = substitute_placeholder(spec.task, previous, placeholder)

        def _forward(live: StepResult, text: str) -> None:
            if on_progress is not None:
                on_progress([*results, live], text)

        result = await run_step(
            worker_cmd,
            agent,
            task,
            cwd=resolve_cwd(spec.cwd, default_cwd),
            cancel=cancel,
            on_progress=_forward if on_progress is not None else None,
            kill_grace_sec=kill_grace_sec,
        )
        results.append(result)
        if result.exit_code != 0:
            return ChainOutcome(results=results, output=previous, failed=result)
        previous = final_output(result.messages)
        if on_progress is not None:
            on_progress(list(results), previous)
    return ChainOutcome(results=results, output=previous)
