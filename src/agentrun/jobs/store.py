"""File hand-off between the dispatcher, the detached runner and the correlator.

Job configs are single-use: written once by the dispatcher, deleted by the
runner as soon as they are read. Completion payloads are written atomically
so the correlator never observes a half-written document.
"""

from __future__ import annotations

import errno
import json
import os
import stat
import tempfile
from contextlib import suppress
from pathlib import Path

from agentrun.jobs.model import CompletionPayload, JobRecord
from agentrun.util.errors import JobConfigError
from agentrun.util.paths import ensure_directory, has_symlink_ancestor, is_symlink_path

RESULT_SUFFIX = ".json"
_TMP_SUFFIX = ".tmp"


def write_job_config(job: JobRecord, *, directory: Path | None = None) -> Path:
    """Serialize ``job`` to a uniquely named, owner-only temp file."""
    fd, name = tempfile.mkstemp(
        prefix=f"agentrun-job-{job.id}-",
        suffix=".json",
        dir=str(directory) if directory is not None else None,
    )
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(job.to_dict(), ensure_ascii=False))
    except OSError:
        with suppress(OSError):
            path.unlink(missing_ok=True)
        raise
    return path


def consume_job_config(path: Path) -> JobRecord:
    """Read a job config and delete it before returning."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise JobConfigError(f"job config not found: {path}") from exc
    except (OSError, UnicodeError) as exc:
        raise JobConfigError(f"failed to read job config: {path}") from exc
    finally:
        with suppress(OSError):
            path.unlink(missing_ok=True)
    return parse_job_config(content)


def parse_job_config(content: str) -> JobRecord:
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as exc:
        raise JobConfigError(f"invalid job config json: {exc}") from exc
    if not isinstance(raw, dict):
        raise JobConfigError("job config root must be object")
    job = JobRecord.from_dict(raw)
    if not job.id:
        raise JobConfigError("job config is missing id")
    if not job.steps:
        raise JobConfigError("job config has no steps")
    if not job.result_path:
        raise JobConfigError("job config is missing resultPath")
    return job


def write_payload_atomic(path: Path, payload: CompletionPayload) -> None:
    """Write ``payload`` next to ``path`` and rename it into place."""
    ensure_directory(path.parent)
    if is_symlink_path(path):
        raise OSError(f"result path must not be symlink: {path}")
    # The temp name must not end in .json or the correlator would pick it up.
    tmp_path = path.with_name(path.name + _TMP_SUFFIX)
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary result path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload.to_dict(), ensure_ascii=False))
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise


def read_payload(path: Path) -> CompletionPayload | None:
    """Parse a completion file. Returns None when it is not valid JSON."""
    if has_symlink_ancestor(path) or is_symlink_path(path):
        return None
    try:
        meta = path.lstat()
    except FileNotFoundError:
        return None
    if not stat.S_ISREG(meta.st_mode):
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeError):
        return None
    if not isinstance(raw, dict):
        return None
    return CompletionPayload.from_dict(raw)


def list_result_files(results_dir: Path) -> list[Path]:
    try:
        entries = sorted(results_dir.iterdir())
    except FileNotFoundError:
        return []
    return [entry for entry in entries if entry.name.endswith(RESULT_SUFFIX)]
