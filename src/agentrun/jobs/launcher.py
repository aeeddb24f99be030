from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agentrun.config.schema import AgentConfig, Mode, TaskSpec
from agentrun.exec.pool import resolve_cwd
from agentrun.jobs.model import JobRecord, JobStep
from agentrun.jobs.store import write_job_config
from agentrun.util.ids import new_job_id
from agentrun.util.paths import result_path

logger = logging.getLogger(__name__)


class JobLauncher(Protocol):
    """Hands a job to something that outlives the caller. Returns no handle."""

    def launch(self, job: JobRecord) -> None: ...


@dataclass(slots=True)
class ProcessJobLauncher:
    """Start ``python -m agentrun.jobs.runner CONFIG`` in its own session."""

    worker_cmd: list[str]
    python: str = sys.executable
    config_dir: Path | None = None

    def launch(self, job: JobRecord) -> None:
        try:
            config_path = write_job_config(job, directory=self.config_dir)
        except OSError as exc:
            logger.warning("job %s: failed to write config: %s", job.id, exc)
            return
        env = os.environ.copy()
        env["AGENTRUN_WORKER"] = shlex.join(self.worker_cmd)
        try:
            subprocess.Popen(
                [self.python, "-m", "agentrun.jobs.runner", str(config_path)],
                cwd=job.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except (OSError, ValueError) as exc:
            logger.warning("job %s: failed to launch runner: %s", job.id, exc)
            config_path.unlink(missing_ok=True)
            return
        logger.info("job %s (%s) launched", job.id, job.label)


def _job_step(spec: TaskSpec, agent: AgentConfig, default_cwd: Path) -> JobStep:
    prompt = agent.system_prompt.strip() if agent.system_prompt else ""
    return JobStep(
        agent=spec.agent,
        task=spec.task,
        cwd=str(resolve_cwd(spec.cwd, default_cwd)) if spec.cwd else None,
        model=agent.model,
        tools=list(agent.tools),
        system_prompt=prompt or None,
    )


@dataclass(slots=True)
class AsyncAck:
    id: str
    mode: Mode
    label: str


def dispatch_async(
    launcher: JobLauncher,
    mode: Mode,
    units: Sequence[tuple[TaskSpec, AgentConfig]],
    *,
    results_dir: Path,
    cwd: str,
    placeholder: str,
) -> AsyncAck:
    """Launch detached jobs for a resolved request and acknowledge immediately.

    Parallel requests get one job per task, sharing the job id and suffixing
    the result file with the task index. Single and chain requests are one job.
    """
    job_id = new_job_id()
    default_cwd = Path(cwd)
    if mode == "parallel":
        total = len(units)
        for index, (spec, agent) in enumerate(units):
            launcher.launch(
                JobRecord(
                    id=job_id,
                    steps=[_job_step(spec, agent, default_cwd)],
                    result_path=str(result_path(results_dir, job_id, index)),
                    cwd=str(resolve_cwd(spec.cwd, default_cwd)),
                    placeholder=placeholder,
                    task_index=index,
                    total_tasks=total,
                )
            )
        return AsyncAck(id=job_id, mode=mode, label=f"{total} tasks")

    job = JobRecord(
        id=job_id,
        steps=[_job_step(spec, agent, default_cwd) for spec, agent in units],
        result_path=str(result_path(results_dir, job_id)),
        cwd=cwd,
        placeholder=placeholder,
    )
    launcher.launch(job)
    label = " -> ".join(step.agent for step in job.steps) if mode == "chain" else job.label
    return AsyncAck(id=job_id, mode=mode, label=label)
