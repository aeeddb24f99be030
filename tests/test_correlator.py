from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentrun.jobs.correlator import CompletionCorrelator
from agentrun.jobs.model import CompletionPayload, StepOutcome
from agentrun.jobs.store import write_payload_atomic


def _payload(job_id: str, *, success: bool = True) -> CompletionPayload:
    return CompletionPayload(
        id=job_id,
        label="scout",
        success=success,
        summary="scout:\nok",
        results=[StepOutcome("scout", "ok", success)],
        exit_code=0 if success else 1,
        timestamp=1,
    )


async def _wait_until(predicate, timeout: float = 5.0) -> None:  # type: ignore[no-untyped-def]
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_start_clears_stale_files(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    write_payload_atomic(results_dir / "old.json", _payload("old"))
    published: list[CompletionPayload] = []

    async with CompletionCorrelator(results_dir, published.append, poll_interval_sec=0.02):
        await asyncio.sleep(0.1)
    assert published == []
    assert list(results_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_start_without_clear_sweeps_existing(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    write_payload_atomic(results_dir / "early.json", _payload("early"))
    published: list[CompletionPayload] = []

    correlator = CompletionCorrelator(results_dir, published.append, clear_on_start=False)
    await correlator.start()
    try:
        assert [p.id for p in published] == ["early"]
        assert not (results_dir / "early.json").exists()
    finally:
        await correlator.stop()


@pytest.mark.asyncio
async def test_live_file_is_published_once_and_deleted(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    published: list[CompletionPayload] = []
    correlator = CompletionCorrelator(
        results_dir, published.append, debounce_sec=0.01, poll_interval_sec=0.02
    )
    await correlator.start()
    try:
        assert correlator.running
        write_payload_atomic(results_dir / "job-1.json", _payload("job-1", success=False))
        await _wait_until(lambda: len(published) == 1)
        await asyncio.sleep(0.1)
        assert [p.id for p in published] == ["job-1"]
        assert published[0].success is False
        assert not (results_dir / "job-1.json").exists()
    finally:
        await correlator.stop()
    assert not correlator.running


@pytest.mark.asyncio
async def test_malformed_file_is_deleted_without_publishing(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    published: list[CompletionPayload] = []
    async with CompletionCorrelator(
        results_dir, published.append, debounce_sec=0.01, poll_interval_sec=0.02
    ):
        (results_dir / "broken.json").write_text("{half", encoding="utf-8")
        (results_dir / "ignored.txt").write_text("x", encoding="utf-8")
        await _wait_until(lambda: not (results_dir / "broken.json").exists())
    assert published == []
    assert (results_dir / "ignored.txt").exists()


def test_handle_is_idempotent(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    write_payload_atomic(results_dir / "a.json", _payload("a"))
    published: list[CompletionPayload] = []
    correlator = CompletionCorrelator(results_dir, published.append)
    assert correlator.handle("a.json") is True
    assert correlator.handle("a.json") is False
    assert correlator.handle("a.json.tmp") is False
    assert len(published) == 1


def test_parallel_files_publish_separately(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    for index in range(3):
        payload = _payload("job-9")
        payload.task_index = index
        payload.total_tasks = 3
        write_payload_atomic(results_dir / f"job-9-{index}.json", payload)
    published: list[CompletionPayload] = []
    correlator = CompletionCorrelator(results_dir, published.append)
    assert correlator.sweep() == 3
    assert [p.task_index for p in published] == [0, 1, 2]


def _raise(_payload: CompletionPayload) -> None:
    raise RuntimeError("subscriber broke")


def test_subscriber_error_still_deletes_file(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    results_dir = tmp_path / "results"
    write_payload_atomic(results_dir / "job-1.json", _payload("job-1"))
    write_payload_atomic(results_dir / "job-2.json", _payload("job-2"))
    correlator = CompletionCorrelator(results_dir, _raise)
    with caplog.at_level("ERROR", logger="agentrun"):
        assert correlator.sweep() == 0
    assert list(results_dir.iterdir()) == []
    assert "subscriber failed" in caplog.text


@pytest.mark.asyncio
async def test_subscriber_error_does_not_stop_watching(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"
    published: list[CompletionPayload] = []

    def _subscriber(payload: CompletionPayload) -> None:
        if payload.id == "job-1":
            raise RuntimeError("subscriber broke")
        published.append(payload)

    async with CompletionCorrelator(
        results_dir, _subscriber, debounce_sec=0.01, poll_interval_sec=0.02
    ) as correlator:
        write_payload_atomic(results_dir / "job-1.json", _payload("job-1"))
        await _wait_until(lambda: not (results_dir / "job-1.json").exists())
        write_payload_atomic(results_dir / "job-2.json", _payload("job-2"))
        await _wait_until(lambda: len(published) == 1)
        assert correlator.running
    assert [p.id for p in published] == ["job-2"]
    assert list(results_dir.iterdir()) == []
