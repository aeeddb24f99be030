from __future__ import annotations

import sys
from pathlib import Path

import pytest

from agentrun.config.loader import StaticAgentRegistry
from agentrun.config.schema import AgentConfig
from agentrun.config.settings import Settings

FAKE_WORKER = Path(__file__).resolve().parents[1] / "tools" / "fake_worker.py"


@pytest.fixture
def worker_cmd() -> list[str]:
    return [sys.executable, str(FAKE_WORKER)]


@pytest.fixture
def agents() -> list[AgentConfig]:
    return [
        AgentConfig(name="scout", model="fast-model", tools=["read", "grep"]),
        AgentConfig(name="planner", system_prompt="You plan things."),
        AgentConfig(name="worker"),
    ]


@pytest.fixture
def registry(agents: list[AgentConfig]) -> StaticAgentRegistry:
    return StaticAgentRegistry(agents)


@pytest.fixture
def settings(tmp_path: Path, worker_cmd: list[str]) -> Settings:
    return Settings(
        worker_cmd=worker_cmd,
        results_dir=tmp_path / "results",
        user_agents_file=tmp_path / "user-agents.yaml",
        project_agents_file=tmp_path / "project-agents.yaml",
        kill_grace_sec=0.5,
        debounce_sec=0.01,
        poll_interval_sec=0.02,
    )
