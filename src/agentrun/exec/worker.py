from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from agentrun.config.schema import AgentConfig
from agentrun.exec.cancel import KILL_GRACE_SEC, CancelToken, terminate_on_cancel
from agentrun.exec.capture import iter_lines, read_all
from agentrun.exec.detect import detect_failure
from agentrun.exec.events import StepResult, final_output, parse_event_line, tool_calls

logger = logging.getLogger(__name__)

RUNNING_PLACEHOLDER = "(running...)"
StepProgress = Callable[[StepResult, str], None]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.-]")


def write_system_prompt(agent_name: str, prompt: str) -> tuple[Path, Path]:
    """Write ``prompt`` to an owner-only temp file. Returns (temp_dir, file_path)."""
    tmp_dir = Path(tempfile.mkdtemp(prefix="agentrun-prompt-"))
    prompt_path = tmp_dir / f"{_UNSAFE_FILENAME_CHARS.sub('_', agent_name)}.md"
    fd = os.open(str(prompt_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(prompt)
    return tmp_dir, prompt_path


def build_worker_args(
    agent: AgentConfig,
    task: str,
    *,
    prompt_path: Path | None,
    streaming: bool,
) -> list[str]:
    """Worker CLI arguments; ``streaming`` selects the JSON event mode."""
    args = ["--mode", "json", "-p", "--no-session"] if streaming else ["-p", "--no-session"]
    if agent.model:
        args += ["--model", agent.model]
    if agent.tools:
        args += ["--tools", ",".join(agent.tools)]
    if prompt_path is not None:
        args += ["--append-system-prompt", str(prompt_path)]
    args.append(f"Task: {task}")
    return args


def _progress_text(result: StepResult, pending: dict[str, str]) -> str:
    text = final_output(result.messages)
    if text:
        return text
    if pending:
        return f"(running {', '.join(sorted(set(pending.values())))}...)"
    return RUNNING_PLACEHOLDER


async def run_step(
    worker_cmd: list[str],
    agent: AgentConfig,
    task: str,
    *,
    cwd: Path,
    cancel: CancelToken | None = None,
    on_progress: StepProgress | None = None,
    kill_grace_sec: float = KILL_GRACE_SEC,
) -> StepResult:
    """Run one worker process in JSON streaming mode and return its finalized result."""
    result = StepResult(agent=agent.name, task=task)
    # toolCallId -> tool name, for progress text only
    pending: dict[str, str] = {}

    tmp_dir: Path | None = None
    prompt_path: Path | None = None
    try:
        if agent.system_prompt and agent.system_prompt.strip():
            tmp_dir, prompt_path = write_system_prompt(agent.name, agent.system_prompt)
        args = build_worker_args(agent, task, prompt_path=prompt_path, streaming=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *worker_cmd,
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.warning("failed to start worker for agent %s: %s", agent.name, exc)
            result.exit_code = 1
            return result

        stderr_task = asyncio.create_task(read_all(proc.stderr))
        cancel_task = (
            asyncio.create_task(terminate_on_cancel(proc, cancel, kill_grace_sec))
            if cancel is not None
            else None
        )
        try:
            async for line in iter_lines(proc.stdout):
                event = parse_event_line(line)
                if event is None:
                    continue
                message = event.message
                result.messages.append(message)
                if event.type == "message_end" and message.get("role") == "assistant":
                    result.usage.add_turn(message.get("usage"))
                    model = message.get("model")
                    if not result.model and isinstance(model, str) and model:
                        result.model = model
                    error_message = message.get("errorMessage")
                    if isinstance(error_message, str) and error_message:
                        result.error = error_message
                    for call in tool_calls(message):
                        call_id = call.get("id")
                        if isinstance(call_id, str):
                            pending[call_id] = str(call.get("name") or "tool")
                elif event.type == "tool_result_end":
                    call_id = message.get("toolCallId")
                    if isinstance(call_id, str):
                        pending.pop(call_id, None)
                if on_progress is not None:
                    on_progress(result, _progress_text(result, pending))
            stderr_text = await stderr_task
            exit_code = await proc.wait()
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
                with suppress(asyncio.CancelledError):
                    await cancel_task
            if not stderr_task.done():
                stderr_task.cancel()
            if proc.returncode is None:
                with suppress(ProcessLookupError):
                    proc.kill()
    finally:
        if tmp_dir is not None:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    result.exit_code = exit_code
    if exit_code != 0 and stderr_text.strip() and not result.error:
        result.error = stderr_text.strip()
    if exit_code == 0 and not result.error:
        verdict = detect_failure(result.messages)
        if verdict.has_error:
            logger.info(
                "agent %s exited 0 but %s reported a failure; marking failed",
                agent.name,
                verdict.tool,
            )
            result.exit_code = verdict.exit_code or 1
            result.error = verdict.message()
    return result
