from __future__ import annotations

import asyncio
import codecs
from collections.abc import AsyncIterator

CHUNK_SIZE = 4096


async def iter_lines(stream: asyncio.StreamReader | None) -> AsyncIterator[str]:
    """Yield newline-terminated lines as chunks arrive.

    The trailing partial line is carried into the next chunk and flushed at EOF.
    """
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        pending += decoder.decode(chunk)
        lines = pending.split("\n")
        pending = lines.pop()
        for line in lines:
            yield line
    pending += decoder.decode(b"", final=True)
    if pending.strip():
        yield pending


async def read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    chunks: list[bytes] = []
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks).decode("utf-8", errors="replace")
