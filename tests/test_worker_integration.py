from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import pytest

from agentrun.config.schema import AgentConfig
from agentrun.exec.cancel import CancelToken
from agentrun.exec.events import StepResult, final_output
from agentrun.exec.worker import RUNNING_PLACEHOLDER, build_worker_args, run_step


def test_build_worker_args_streaming_and_plain(tmp_path: Path) -> None:
    agent = AgentConfig(name="scout", model="m1", tools=["read", "bash"])
    prompt = tmp_path / "scout.md"
    args = build_worker_args(agent, "look", prompt_path=prompt, streaming=True)
    assert args == [
        "--mode",
        "json",
        "-p",
        "--no-session",
        "--model",
        "m1",
        "--tools",
        "read,bash",
        "--append-system-prompt",
        str(prompt),
        "Task: look",
    ]
    plain = build_worker_args(AgentConfig(name="w"), "x", prompt_path=None, streaming=False)
    assert plain == ["-p", "--no-session", "Task: x"]


@pytest.mark.asyncio
async def test_run_step_success_collects_usage_and_model(
    tmp_path: Path, worker_cmd: list[str]
) -> None:
    agent = AgentConfig(name="scout", model="fast-model")
    result = await run_step(worker_cmd, agent, "[[reply all done]]", cwd=tmp_path)
    assert result.exit_code == 0
    assert result.error is None
    assert final_output(result.messages) == "all done"
    assert result.model == "fast-model"
    assert result.usage.turns == 1
    assert result.usage.input_tokens == 100
    assert result.usage.output_tokens == 20
    assert result.usage.cost == pytest.approx(0.001)


@pytest.mark.asyncio
async def test_run_step_nonzero_exit_uses_stderr(tmp_path: Path, worker_cmd: list[str]) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step(worker_cmd, agent, "[[exit 4]] [[stderr disk full]]", cwd=tmp_path)
    assert result.exit_code == 4
    assert result.error == "disk full"


@pytest.mark.asyncio
async def test_run_step_error_message_is_kept(tmp_path: Path, worker_cmd: list[str]) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step(worker_cmd, agent, "[[error rate limited]] [[exit 1]]", cwd=tmp_path)
    assert result.exit_code == 1
    assert result.error == "rate limited"


@pytest.mark.asyncio
async def test_run_step_spawn_failure_is_exit_one(tmp_path: Path) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step([str(tmp_path / "missing-binary")], agent, "x", cwd=tmp_path)
    assert result.exit_code == 1
    assert result.messages == []


@pytest.mark.asyncio
async def test_run_step_flagged_tool_error_downgrades_exit_zero(
    tmp_path: Path, worker_cmd: list[str]
) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step(worker_cmd, agent, "[[tool-error]]", cwd=tmp_path)
    assert result.exit_code == 2
    assert result.error == "read failed (exit 2): Command exited with code 2"


@pytest.mark.asyncio
async def test_run_step_bash_fatal_output_downgrades_exit_zero(
    tmp_path: Path, worker_cmd: list[str]
) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step(
        worker_cmd, agent, "[[bash open /etc/shadow: permission denied]]", cwd=tmp_path
    )
    assert result.exit_code == 1
    assert result.error is not None
    assert result.error.startswith("bash failed (exit 1):")


@pytest.mark.asyncio
async def test_run_step_skips_malformed_lines(tmp_path: Path, worker_cmd: list[str]) -> None:
    agent = AgentConfig(name="worker")
    result = await run_step(worker_cmd, agent, "[[garbage]] [[reply fine]]", cwd=tmp_path)
    assert result.exit_code == 0
    assert len(result.messages) == 1
    assert final_output(result.messages) == "fine"


@pytest.mark.asyncio
async def test_run_step_passes_prompt_file_and_removes_it(
    tmp_path: Path, worker_cmd: list[str]
) -> None:
    record = tmp_path / "record.json"
    agent = AgentConfig(name="planner", tools=["read"], system_prompt="You plan things.")
    result = await run_step(worker_cmd, agent, f"[[record {record}]]", cwd=tmp_path)
    assert result.exit_code == 0

    data = json.loads(record.read_text(encoding="utf-8"))
    assert data["system_prompt"] == "You plan things."
    assert data["prompt_mode"] == "0o600"
    assert Path(data["cwd"]).resolve() == tmp_path.resolve()
    argv = data["argv"]
    assert argv[:4] == ["--mode", "json", "-p", "--no-session"]
    assert argv[argv.index("--tools") + 1] == "read"
    prompt_path = Path(argv[argv.index("--append-system-prompt") + 1])
    assert not prompt_path.exists()
    assert not prompt_path.parent.exists()


@pytest.mark.asyncio
async def test_run_step_blank_prompt_is_not_written(tmp_path: Path, worker_cmd: list[str]) -> None:
    record = tmp_path / "record.json"
    agent = AgentConfig(name="worker", system_prompt="   ")
    await run_step(worker_cmd, agent, f"[[record {record}]]", cwd=tmp_path)
    data = json.loads(record.read_text(encoding="utf-8"))
    assert "--append-system-prompt" not in data["argv"]
    assert data["system_prompt"] is None


@pytest.mark.asyncio
async def test_run_step_reports_progress(tmp_path: Path, worker_cmd: list[str]) -> None:
    updates: list[str] = []

    def _on_progress(result: StepResult, text: str) -> None:
        updates.append(text)

    agent = AgentConfig(name="worker")
    await run_step(
        worker_cmd,
        agent,
        "[[bash ok]] [[reply finished]]",
        cwd=tmp_path,
        on_progress=_on_progress,
    )
    assert updates[0] == "(running bash...)"
    assert updates[1] == RUNNING_PLACEHOLDER
    assert updates[-1] == "finished"


@pytest.mark.asyncio
async def test_run_step_cancel_terminates_worker(tmp_path: Path, worker_cmd: list[str]) -> None:
    token = CancelToken()
    agent = AgentConfig(name="worker")
    started = time.monotonic()
    task = asyncio.create_task(
        run_step(worker_cmd, agent, "[[sleep 30]]", cwd=tmp_path, cancel=token, kill_grace_sec=1)
    )
    await asyncio.sleep(0.5)
    token.cancel()
    result = await asyncio.wait_for(task, timeout=10)
    assert result.exit_code != 0
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_run_step_cancel_escalates_to_kill(tmp_path: Path, worker_cmd: list[str]) -> None:
    token = CancelToken()
    agent = AgentConfig(name="worker")
    task = asyncio.create_task(
        run_step(
            worker_cmd,
            agent,
            "[[ignore-term]] [[sleep 30]]",
            cwd=tmp_path,
            cancel=token,
            kill_grace_sec=0.3,
        )
    )
    await asyncio.sleep(1.0)
    token.cancel()
    result = await asyncio.wait_for(task, timeout=10)
    assert result.exit_code == -9
