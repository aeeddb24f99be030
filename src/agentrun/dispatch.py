"""Top-level entry: validate a request and route it to a sync or async path."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agentrun.config.loader import AgentRegistry
from agentrun.config.schema import AgentConfig, ExecutionRequest, Mode, TaskSpec
from agentrun.config.settings import Settings
from agentrun.exec.cancel import CancelToken
from agentrun.exec.chain import run_chain
from agentrun.exec.events import StepResult, final_output
from agentrun.exec.pool import resolve_cwd, run_parallel
from agentrun.exec.worker import run_step
from agentrun.jobs.launcher import JobLauncher, ProcessJobLauncher, dispatch_async
from agentrun.util.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Details:
    mode: Mode
    results: list[StepResult] = field(default_factory=list)
    async_id: str | None = None


@dataclass(slots=True)
class ToolResult:
    text: str
    details: Details
    is_error: bool = False
    rejected: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "text": self.text,
            "is_error": self.is_error,
            "mode": self.details.mode,
            "async_id": self.details.async_id,
            "results": [result.to_dict() for result in self.details.results],
        }


Progress = Callable[[ToolResult], None]


def _unknown_agent_result(name: str) -> StepResult:
    return StepResult(agent=name, task="", exit_code=1, error=f"Unknown agent: {name}")


class Dispatcher:
    def __init__(
        self,
        registry: AgentRegistry,
        settings: Settings | None = None,
        *,
        launcher: JobLauncher | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or Settings()
        self.launcher = launcher or ProcessJobLauncher(worker_cmd=self.settings.worker_cmd)
        self.cwd = cwd or Path.cwd()

    def _resolve(
        self, request: ExecutionRequest
    ) -> tuple[Mode, list[tuple[TaskSpec, AgentConfig]]]:
        agents = self.registry.list_agents(request.agent_scope)
        modes = request.modes()
        if len(modes) != 1:
            names = ", ".join(agent.name for agent in agents) or "none"
            raise ValidationError(f"Provide exactly one mode. Agents: {names}")
        mode = modes[0]

        specs: list[TaskSpec]
        if mode == "single":
            assert request.single is not None
            specs = [request.single]
        elif mode == "parallel":
            specs = list(request.parallel or [])
            if len(specs) > self.settings.max_parallel:
                raise ValidationError(f"Max {self.settings.max_parallel} tasks")
        else:
            specs = list(request.chain or [])

        by_name = {agent.name: agent for agent in agents}
        unknown = [spec.agent for spec in specs if spec.agent not in by_name]
        if unknown:
            raise ValidationError(
                f"Unknown agent: {', '.join(dict.fromkeys(unknown))}",
                unknown_agents=list(dict.fromkeys(unknown)),
            )
        return mode, [(spec, by_name[spec.agent]) for spec in specs]

    async def execute(
        self,
        request: ExecutionRequest,
        *,
        cancel: CancelToken | None = None,
        on_update: Progress | None = None,
    ) -> ToolResult:
        try:
            mode, units = self._resolve(request)
        except ValidationError as exc:
            logger.info("request rejected: %s", exc)
            failed_mode: Mode = request.modes()[0] if len(request.modes()) == 1 else "single"
            return ToolResult(
                text=str(exc),
                details=Details(
                    mode=failed_mode,
                    results=[_unknown_agent_result(name) for name in exc.unknown_agents],
                ),
                is_error=True,
                rejected=True,
            )

        default_cwd = resolve_cwd(request.cwd, self.cwd)
        if request.is_async:
            return self._execute_async(mode, units, default_cwd)
        if mode == "chain":
            return await self._execute_chain(units, default_cwd, cancel, on_update)
        if mode == "parallel":
            return await self._execute_parallel(units, default_cwd, cancel)
        return await self._execute_single(units[0], default_cwd, cancel, on_update)

    def _execute_async(
        self, mode: Mode, units: list[tuple[TaskSpec, AgentConfig]], default_cwd: Path
    ) -> ToolResult:
        ack = dispatch_async(
            self.launcher,
            mode,
            units,
            results_dir=self.settings.results_dir,
            cwd=str(default_cwd),
            placeholder=self.settings.placeholder,
        )
        prefix = {"single": "Async", "parallel": "Async parallel", "chain": "Async chain"}[mode]
        return ToolResult(
            text=f"{prefix}: {ack.label} [{ack.id}]",
            details=Details(mode=mode, async_id=ack.id),
        )

    async def _execute_single(
        self,
        unit: tuple[TaskSpec, AgentConfig],
        default_cwd: Path,
        cancel: CancelToken | None,
        on_update: Progress | None,
    ) -> ToolResult:
        spec, agent = unit

        def _forward(live: StepResult, text: str) -> None:
            if on_update is not None:
                on_update(ToolResult(text=text, details=Details(mode="single", results=[live])))

        result = await run_step(
            self.settings.worker_cmd,
            agent,
            spec.task,
            cwd=resolve_cwd(spec.cwd, default_cwd),
            cancel=cancel,
            on_progress=_forward if on_update is not None else None,
            kill_grace_sec=self.settings.kill_grace_sec,
        )
        details = Details(mode="single", results=[result])
        if result.exit_code != 0:
            return ToolResult(text=result.error or "Failed", details=details, is_error=True)
        return ToolResult(text=final_output(result.messages) or "(no output)", details=details)

    async def _execute_parallel(
        self,
        units: list[tuple[TaskSpec, AgentConfig]],
        default_cwd: Path,
        cancel: CancelToken | None,
    ) -> ToolResult:
        outcome = await run_parallel(
            self.settings.worker_cmd,
            units,
            default_cwd=default_cwd,
            cancel=cancel,
            concurrency=self.settings.max_concurrency,
            kill_grace_sec=self.settings.kill_grace_sec,
        )
        return ToolResult(
            text=outcome.summary(),
            details=Details(mode="parallel", results=outcome.results),
        )

    async def _execute_chain(
        self,
        units: list[tuple[TaskSpec, AgentConfig]],
        default_cwd: Path,
        cancel: CancelToken | None,
        on_update: Progress | None,
    ) -> ToolResult:
        def _forward(results: list[StepResult], text: str) -> None:
            if on_update is not None:
                on_update(ToolResult(text=text, details=Details(mode="chain", results=results)))

        outcome = await run_chain(
            self.settings.worker_cmd,
            units,
            default_cwd=default_cwd,
            cancel=cancel,
            on_progress=_forward if on_update is not None else None,
            placeholder=self.settings.placeholder,
            kill_grace_sec=self.settings.kill_grace_sec,
        )
        details = Details(mode="chain", results=outcome.results)
        if outcome.failed is not None:
            return ToolResult(
                text=outcome.failed.error or "Chain failed", details=details, is_error=True
            )
        return ToolResult(text=outcome.output or "(no output)", details=details)
