from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from agentrun.jobs.model import CompletionPayload
from agentrun.jobs.store import RESULT_SUFFIX, list_result_files, read_payload
from agentrun.util.paths import ensure_directory

logger = logging.getLogger(__name__)

Publisher = Callable[[CompletionPayload], None]


class CompletionCorrelator:
    """Turns completion files in one results directory into one-shot notifications.

    ``start()`` clears stale files, sweeps anything already present and then
    watches the directory by polling its listing. Each new ``*.json`` file is
    read after a short debounce, published once and deleted. Malformed files
    are deleted without publishing. A file is deleted even when the subscriber
    raises.

    The debounce only covers writers that rename a finished file into place;
    a slow non-atomic writer is read early and discarded as malformed.
    """

    def __init__(
        self,
        results_dir: Path,
        publish: Publisher,
        *,
        debounce_sec: float = 0.05,
        poll_interval_sec: float = 0.1,
        clear_on_start: bool = True,
    ) -> None:
        self.results_dir = results_dir
        self._publish = publish
        self._debounce_sec = debounce_sec
        self._poll_interval_sec = poll_interval_sec
        self._clear_on_start = clear_on_start
        self._seen: set[str] = set()
        self._watch_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def start(self) -> None:
        if self.running:
            return
        ensure_directory(self.results_dir)
        if self._clear_on_start:
            self.clear_stale()
        self.sweep()
        self._seen = set()
        self._watch_task = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        tasks = [t for t in (self._watch_task, *self._pending) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._watch_task = None
        self._pending.clear()

    async def __aenter__(self) -> CompletionCorrelator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def clear_stale(self) -> int:
        removed = 0
        for path in list_result_files(self.results_dir):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("failed to remove stale result %s: %s", path, exc)
                continue
            removed += 1
        if removed:
            logger.info("removed %d stale result file(s) from %s", removed, self.results_dir)
        return removed

    def sweep(self) -> int:
        published = 0
        for path in list_result_files(self.results_dir):
            if self.handle(path.name):
                published += 1
        return published

    def handle(self, name: str) -> bool:
        """Consume one result file. Returns True when a notification was published."""
        if not name.endswith(RESULT_SUFFIX):
            return False
        path = self.results_dir / name
        if not path.exists():
            return False
        published = False
        try:
            payload = read_payload(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("failed to read result %s: %s", path, exc)
            payload = None
        try:
            if payload is None:
                logger.warning("discarding malformed result file %s", path)
            else:
                self._publish(payload)
                published = True
        except Exception:
            logger.exception("subscriber failed for result %s", path)
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("failed to remove result %s: %s", path, exc)
        return published

    async def _handle_later(self, name: str) -> None:
        await asyncio.sleep(self._debounce_sec)
        self.handle(name)

    async def _watch(self) -> None:
        while True:
            try:
                current = {path.name for path in list_result_files(self.results_dir)}
            except OSError as exc:
                logger.warning("failed to list %s: %s", self.results_dir, exc)
                current = self._seen
            for name in sorted(current - self._seen):
                task = asyncio.create_task(self._handle_later(name))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            self._seen = current
            await asyncio.sleep(self._poll_interval_sec)
