from __future__ import annotations

import time


def timestamp_ms() -> int:
    """Return milliseconds since the epoch."""
    return int(time.time() * 1000)
