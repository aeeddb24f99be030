from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from agentrun.jobs.model import CompletionPayload, JobRecord, JobStep, StepOutcome
from agentrun.jobs.store import (
    consume_job_config,
    list_result_files,
    parse_job_config,
    read_payload,
    write_job_config,
    write_payload_atomic,
)
from agentrun.util.errors import JobConfigError


def _job(tmp_path: Path, **overrides: object) -> JobRecord:
    data: dict[str, object] = {
        "id": "job-1",
        "steps": [JobStep(agent="scout", task="look", tools=["read"])],
        "result_path": str(tmp_path / "results" / "job-1.json"),
        "cwd": str(tmp_path),
        "placeholder": "{previous}",
    }
    data.update(overrides)
    return JobRecord(**data)  # type: ignore[arg-type]


def test_job_config_is_owner_only_and_single_use(tmp_path: Path) -> None:
    job = _job(tmp_path, task_index=1, total_tasks=3)
    path = write_job_config(job, directory=tmp_path)
    assert path.name.startswith("agentrun-job-job-1-")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["resultPath"] == job.result_path
    assert raw["taskIndex"] == 1
    assert raw["steps"][0]["systemPrompt"] is None

    loaded = consume_job_config(path)
    assert loaded == job
    assert not path.exists()
    with pytest.raises(JobConfigError, match="not found"):
        consume_job_config(path)


def test_invalid_job_config_is_still_deleted(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("{oops", encoding="utf-8")
    with pytest.raises(JobConfigError):
        consume_job_config(path)
    assert not path.exists()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[]", "root must be object"),
        ('{"steps": [{"agent": "a", "task": "t"}], "resultPath": "r"}', "missing id"),
        ('{"id": "x", "steps": [], "resultPath": "r"}', "no steps"),
        ('{"id": "x", "steps": [{"agent": "a", "task": "t"}]}', "missing resultPath"),
    ],
)
def test_parse_job_config_errors(content: str, message: str) -> None:
    with pytest.raises(JobConfigError, match=message):
        parse_job_config(content)


def test_job_label() -> None:
    single = JobRecord(id="x", steps=[JobStep("a", "t")], result_path="r", cwd=".", placeholder="")
    chain = JobRecord(
        id="x",
        steps=[JobStep("a", "t"), JobStep("b", "t")],
        result_path="r",
        cwd=".",
        placeholder="",
    )
    assert single.label == "a"
    assert chain.label == "chain:a->b"


def test_payload_from_outcomes(tmp_path: Path) -> None:
    job = _job(tmp_path, task_index=0, total_tasks=2)
    outcomes = [
        StepOutcome(agent="scout", output="found", success=True),
        StepOutcome(agent="planner", output="", success=False),
    ]
    payload = CompletionPayload.from_outcomes(job, outcomes, timestamp=123)
    assert payload.success is False
    assert payload.exit_code == 1
    assert payload.summary == "scout:\nfound\n\nplanner:\n"
    data = payload.to_dict()
    assert data["agent"] == "scout"
    assert data["exitCode"] == 1
    assert data["taskIndex"] == 0
    assert data["totalTasks"] == 2


def test_write_payload_atomic_and_read_back(tmp_path: Path) -> None:
    target = tmp_path / "results" / "job-1.json"
    payload = CompletionPayload(
        id="job-1",
        label="scout",
        success=True,
        summary="scout:\nok",
        results=[StepOutcome("scout", "ok", True)],
        exit_code=0,
        timestamp=1,
    )
    write_payload_atomic(target, payload)
    assert target.exists()
    assert not target.with_name("job-1.json.tmp").exists()
    assert read_payload(target) == payload
    assert "taskIndex" not in json.loads(target.read_text(encoding="utf-8"))


def test_write_payload_refuses_symlink_target(tmp_path: Path) -> None:
    real = tmp_path / "real.json"
    real.write_text("{}", encoding="utf-8")
    link = tmp_path / "link.json"
    os.symlink(real, link)
    payload = CompletionPayload("x", "a", True, "", [], 0, 0)
    with pytest.raises(OSError, match="symlink"):
        write_payload_atomic(link, payload)


def test_read_payload_rejects_garbage(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("not json", encoding="utf-8")
    assert read_payload(bad) is None
    listed = tmp_path / "list.json"
    listed.write_text("[1]", encoding="utf-8")
    assert read_payload(listed) is None
    assert read_payload(tmp_path / "missing.json") is None


def test_list_result_files_filters_suffix(tmp_path: Path) -> None:
    (tmp_path / "b.json").write_text("{}", encoding="utf-8")
    (tmp_path / "a.json").write_text("{}", encoding="utf-8")
    (tmp_path / "a.json.tmp").write_text("{}", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("", encoding="utf-8")
    assert [p.name for p in list_result_files(tmp_path)] == ["a.json", "b.json"]
    assert list_result_files(tmp_path / "missing") == []
