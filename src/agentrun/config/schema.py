from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

AgentScope = Literal["user", "project", "both"]
Mode = Literal["single", "parallel", "chain"]

AGENT_SCOPES: set[str] = {"user", "project", "both"}
MAX_PARALLEL = 8
MAX_CONCURRENCY = 4
PLACEHOLDER = "{previous}"


@dataclass(slots=True, frozen=True)
class AgentConfig:
    name: str
    model: str | None = None
    tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None
    source: str | None = None


@dataclass(slots=True, frozen=True)
class TaskSpec:
    """One unit of work. Chain steps use the same shape; position is list order."""

    agent: str
    task: str
    cwd: str | None = None


@dataclass(slots=True)
class ExecutionRequest:
    single: TaskSpec | None = None
    parallel: list[TaskSpec] | None = None
    chain: list[TaskSpec] | None = None
    is_async: bool = True
    agent_scope: AgentScope = "user"
    cwd: str | None = None

    def modes(self) -> list[Mode]:
        """Return the populated topology fields; a valid request has exactly one."""
        found: list[Mode] = []
        if self.single is not None and self.single.agent and self.single.task:
            found.append("single")
        if self.parallel:
            found.append("parallel")
        if self.chain:
            found.append("chain")
        return found
