"""Wire models for detached jobs: the single-use config and the completion payload."""

from __future__ import annotations

from dataclasses import dataclass, field


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _as_optional_int(value: object) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _with_task_position(
    data: dict[str, object], task_index: int | None, total_tasks: int | None
) -> dict[str, object]:
    if task_index is not None:
        data["taskIndex"] = task_index
    if total_tasks is not None:
        data["totalTasks"] = total_tasks
    return data


@dataclass(slots=True)
class JobStep:
    agent: str
    task: str
    cwd: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "agent": self.agent,
            "task": self.task,
            "cwd": self.cwd,
            "model": self.model,
            "tools": self.tools,
            "systemPrompt": self.system_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> JobStep:
        return cls(
            agent=_as_str(data.get("agent")),
            task=_as_str(data.get("task")),
            cwd=_as_optional_str(data.get("cwd")),
            model=_as_optional_str(data.get("model")),
            tools=_as_list_str(data.get("tools")),
            system_prompt=_as_optional_str(data.get("systemPrompt")),
        )


@dataclass(slots=True)
class JobRecord:
    id: str
    steps: list[JobStep]
    result_path: str
    cwd: str
    placeholder: str
    task_index: int | None = None
    total_tasks: int | None = None

    @property
    def label(self) -> str:
        """Agent name for one step, ``chain:a->b`` for several."""
        if len(self.steps) == 1:
            return self.steps[0].agent
        return "chain:" + "->".join(step.agent for step in self.steps)

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "id": self.id,
            "steps": [step.to_dict() for step in self.steps],
            "resultPath": self.result_path,
            "cwd": self.cwd,
            "placeholder": self.placeholder,
        }
        return _with_task_position(data, self.task_index, self.total_tasks)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> JobRecord:
        raw_steps = data.get("steps")
        steps: list[JobStep] = []
        if isinstance(raw_steps, list):
            steps = [JobStep.from_dict(step) for step in raw_steps if isinstance(step, dict)]
        return cls(
            id=_as_str(data.get("id")),
            steps=steps,
            result_path=_as_str(data.get("resultPath")),
            cwd=_as_str(data.get("cwd"), "."),
            placeholder=_as_str(data.get("placeholder"), "{previous}"),
            task_index=_as_optional_int(data.get("taskIndex")),
            total_tasks=_as_optional_int(data.get("totalTasks")),
        )


@dataclass(slots=True)
class StepOutcome:
    agent: str
    output: str
    success: bool

    def to_dict(self) -> dict[str, object]:
        return {"agent": self.agent, "output": self.output, "success": self.success}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StepOutcome:
        return cls(
            agent=_as_str(data.get("agent")),
            output=_as_str(data.get("output")),
            success=_as_bool(data.get("success")),
        )


@dataclass(slots=True)
class CompletionPayload:
    id: str
    label: str
    success: bool
    summary: str
    results: list[StepOutcome]
    exit_code: int
    timestamp: int
    task_index: int | None = None
    total_tasks: int | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "id": self.id,
            "agent": self.label,
            "success": self.success,
            "summary": self.summary,
            "results": [result.to_dict() for result in self.results],
            "exitCode": self.exit_code,
            "timestamp": self.timestamp,
        }
        return _with_task_position(data, self.task_index, self.total_tasks)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CompletionPayload:
        raw_results = data.get("results")
        results: list[StepOutcome] = []
        if isinstance(raw_results, list):
            results = [StepOutcome.from_dict(item) for item in raw_results if isinstance(item, dict)]
        return cls(
            id=_as_str(data.get("id")),
            label=_as_str(data.get("agent"), "unknown"),
            success=_as_bool(data.get("success")),
            summary=_as_str(data.get("summary")),
            results=results,
            exit_code=_as_int(data.get("exitCode"), 1),
            timestamp=_as_int(data.get("timestamp")),
            task_index=_as_optional_int(data.get("taskIndex")),
            total_tasks=_as_optional_int(data.get("totalTasks")),
        )

    @classmethod
    def from_outcomes(
        cls,
        job: JobRecord,
        results: list[StepOutcome],
        *,
        timestamp: int,
    ) -> CompletionPayload:
        success = all(result.success for result in results)
        return cls(
            id=job.id,
            label=job.label,
            success=success,
            summary="\n\n".join(f"{result.agent}:\n{result.output}" for result in results),
            results=results,
            exit_code=0 if success else 1,
            timestamp=timestamp,
            task_index=job.task_index,
            total_tasks=job.total_tasks,
        )
