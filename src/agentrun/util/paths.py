from __future__ import annotations

import stat
import tempfile
from pathlib import Path


def default_results_dir() -> Path:
    return Path(tempfile.gettempdir()) / "agentrun-results"


def result_path(results_dir: Path, job_id: str, index: int | None = None) -> Path:
    """Return the completion file path for a job, suffixed by fan-out index."""
    if index is None:
        return results_dir / f"{job_id}.json"
    return results_dir / f"{job_id}-{index}.json"


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    try:
        return path.is_symlink()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed


def has_symlink_ancestor(path: Path) -> bool:
    current = path.parent
    while True:
        try:
            meta = current.lstat()
        except FileNotFoundError:
            pass
        except (OSError, RuntimeError):
            return True
        else:
            if stat.S_ISLNK(meta.st_mode):
                return True
        if current == current.parent:
            return False
        current = current.parent


def ensure_directory(path: Path) -> None:
    """Create ``path`` (and parents) and check it is a real directory."""
    if is_symlink_path(path):
        raise OSError(f"path must not be symlink: {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    try:
        meta = path.lstat()
    except (OSError, RuntimeError) as exc:
        raise OSError(f"path must be directory: {path}") from exc
    if not stat.S_ISDIR(meta.st_mode):
        raise OSError(f"path must be directory: {path}")
