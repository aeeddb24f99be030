from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

logger = logging.getLogger(__name__)

KILL_GRACE_SEC = 3.0


class CancelToken:
    """Cancellation signal shared by every subprocess of one synchronous request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def terminate_process(
    proc: asyncio.subprocess.Process, grace_sec: float = KILL_GRACE_SEC
) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives the grace period."""
    if proc.returncode is not None:
        return
    with suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
    except TimeoutError:
        logger.info("pid %s ignored SIGTERM for %.1fs; killing", proc.pid, grace_sec)
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def terminate_on_cancel(
    proc: asyncio.subprocess.Process, token: CancelToken, grace_sec: float = KILL_GRACE_SEC
) -> None:
    await token.wait()
    logger.info("cancel requested; terminating pid %s", proc.pid)
    await terminate_process(proc, grace_sec)
