"""Detached job runner.

Usage: ``python -m agentrun.jobs.runner CONFIG`` or with the config JSON on
stdin. The config file is deleted as soon as it has been read. Steps run
one at a time with blocking worker calls; exactly one completion payload
is written to the job's result path whatever the outcome.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

from agentrun.config.schema import AgentConfig
from agentrun.config.settings import Settings, parse_worker_cmd
from agentrun.exec.chain import substitute_placeholder
from agentrun.exec.pool import resolve_cwd
from agentrun.exec.worker import build_worker_args, write_system_prompt
from agentrun.jobs.model import CompletionPayload, JobRecord, JobStep, StepOutcome
from agentrun.jobs.store import consume_job_config, parse_job_config, write_payload_atomic
from agentrun.util.errors import AgentRunError, ConfigError
from agentrun.util.time import timestamp_ms

logger = logging.getLogger("agentrun.jobs.runner")

MAX_OUTPUT_BYTES = 10 * 1024 * 1024


def _run_blocking(worker_cmd: list[str], step: JobStep, task: str, cwd: Path) -> StepOutcome:
    agent = AgentConfig(
        name=step.agent,
        model=step.model,
        tools=step.tools,
        system_prompt=step.system_prompt,
    )
    tmp_dir: Path | None = None
    prompt_path: Path | None = None
    try:
        if step.system_prompt:
            tmp_dir, prompt_path = write_system_prompt(step.agent, step.system_prompt)
        args = build_worker_args(agent, task, prompt_path=prompt_path, streaming=False)
        try:
            completed = subprocess.run(
                [*worker_cmd, *args],
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                check=False,
            )
        except (OSError, ValueError) as exc:
            logger.error("failed to start worker for agent %s: %s", step.agent, exc)
            return StepOutcome(agent=step.agent, output="", success=False)
    finally:
        if tmp_dir is not None:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    output = completed.stdout[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace").strip()
    if completed.returncode != 0:
        logger.error("agent %s exited with %s", step.agent, completed.returncode)
    return StepOutcome(agent=step.agent, output=output, success=completed.returncode == 0)


def run_job(job: JobRecord, worker_cmd: list[str]) -> CompletionPayload:
    """Run the job's steps as a chain and write its completion payload."""
    default_cwd = Path(job.cwd)
    previous = ""
    outcomes: list[StepOutcome] = []
    for step in job.steps:
        task = substitute_placeholder(step.task, previous, job.placeholder)
        outcome = _run_blocking(worker_cmd, step, task, resolve_cwd(step.cwd, default_cwd))
        outcomes.append(outcome)
        previous = outcome.output
        if not outcome.success:
            break

    payload = CompletionPayload.from_outcomes(job, outcomes, timestamp=timestamp_ms())
    write_payload_atomic(Path(job.result_path), payload)
    return payload


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a detached agent job")
    parser.add_argument(
        "config",
        nargs="?",
        type=Path,
        help="job config file (deleted after read); reads stdin when omitted",
    )
    return parser.parse_args(argv)


def _worker_cmd() -> list[str]:
    # Only the worker command matters here; other settings belong to the parent.
    raw = os.getenv("AGENTRUN_WORKER")
    return parse_worker_cmd(raw) if raw is not None else Settings().worker_cmd


def _write_failure(job: JobRecord, reason: str) -> None:
    outcome = StepOutcome(agent=job.steps[0].agent, output=reason, success=False)
    payload = CompletionPayload.from_outcomes(job, [outcome], timestamp=timestamp_ms())
    write_payload_atomic(Path(job.result_path), payload)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.config is not None:
            job = consume_job_config(args.config)
        else:
            job = parse_job_config(sys.stdin.read())
        try:
            worker_cmd = _worker_cmd()
        except ConfigError as exc:
            logger.error("job runner error: %s", exc)
            _write_failure(job, str(exc))
            return 1
        run_job(job, worker_cmd)
    except (AgentRunError, OSError) as exc:
        logger.error("job runner error: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
