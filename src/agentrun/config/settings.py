"""Runtime configuration for dispatching agent workers."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from agentrun.config.schema import MAX_CONCURRENCY, MAX_PARALLEL, PLACEHOLDER
from agentrun.util.errors import ConfigError
from agentrun.util.paths import default_results_dir


def _default_user_agents_file() -> Path:
    return Path.home() / ".agentrun" / "agents.yaml"


@dataclass(slots=True)
class Settings:
    """Settings shared by the dispatcher, the detached runner and the correlator."""

    worker_cmd: list[str] = field(default_factory=lambda: ["pi"])
    results_dir: Path = field(default_factory=default_results_dir)
    user_agents_file: Path = field(default_factory=_default_user_agents_file)
    project_agents_file: Path = Path(".agentrun") / "agents.yaml"
    max_parallel: int = MAX_PARALLEL
    max_concurrency: int = MAX_CONCURRENCY
    kill_grace_sec: float = 3.0
    debounce_sec: float = 0.05
    poll_interval_sec: float = 0.1
    placeholder: str = PLACEHOLDER

    @classmethod
    def from_env(cls, results_dir: Path | None = None) -> Settings:
        """Load settings from the environment, falling back to defaults."""

        defaults = cls()
        worker = os.getenv("AGENTRUN_WORKER")
        return cls(
            worker_cmd=parse_worker_cmd(worker) if worker is not None else defaults.worker_cmd,
            results_dir=results_dir
            or Path(os.getenv("AGENTRUN_RESULTS_DIR", str(defaults.results_dir))),
            user_agents_file=Path(
                os.getenv("AGENTRUN_USER_AGENTS", str(defaults.user_agents_file))
            ).expanduser(),
            project_agents_file=Path(
                os.getenv("AGENTRUN_PROJECT_AGENTS", str(defaults.project_agents_file))
            ),
            max_concurrency=_env_int("AGENTRUN_MAX_CONCURRENCY", defaults.max_concurrency),
            kill_grace_sec=_env_float("AGENTRUN_KILL_GRACE_SEC", defaults.kill_grace_sec),
        )


def parse_worker_cmd(raw: str) -> list[str]:
    try:
        parts = shlex.split(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid AGENTRUN_WORKER: {exc}") from exc
    if not parts:
        raise ConfigError("AGENTRUN_WORKER must not be empty")
    if any("\x00" in part for part in parts):
        raise ConfigError("AGENTRUN_WORKER must not contain null bytes")
    return parts


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc
    if value < 1:
        raise ConfigError(f"{name} must be >= 1")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value < 0:
        raise ConfigError(f"{name} must be >= 0")
    return value
