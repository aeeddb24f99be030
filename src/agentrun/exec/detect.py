"""Post-hoc failure detection for workers that exit 0 after a failed tool call.

Detectors run in order and the first verdict wins:

1. any tool result flagged ``isError``;
2. command-execution (``bash``) tool results whose output carries a
   nonzero exit-code phrase or one of the fatal phrases below.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from agentrun.exec.events import Message, first_text

DETAIL_MAX_CHARS = 200
COMMAND_TOOL = "bash"

_EXIT_CODE_PATTERN = re.compile(
    r"exit(?:ed)?\s*(?:with\s*)?(?:code|status)?\s*[:\s]?\s*(\d+)", re.IGNORECASE
)
_FATAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"command not found",
        r"permission denied",
        r"no such file or directory",
        r"segmentation fault",
        r"killed|terminated",
        r"out of memory",
        r"connection refused",
        r"timeout",
    )
)


@dataclass(slots=True, frozen=True)
class Verdict:
    has_error: bool
    exit_code: int = 0
    tool: str | None = None
    detail: str | None = None

    def message(self) -> str:
        if self.detail:
            return f"{self.tool} failed (exit {self.exit_code}): {self.detail}"
        return f"{self.tool} failed with exit code {self.exit_code}"


NO_ERROR = Verdict(has_error=False)
Detector = Callable[[list[Message]], Verdict | None]


def extract_exit_code(text: str | None) -> int | None:
    if not text:
        return None
    match = _EXIT_CODE_PATTERN.search(text)
    if match is None:
        return None
    return int(match.group(1))


def _tool_results(messages: list[Message]) -> list[Message]:
    return [message for message in messages if message.get("role") == "toolResult"]


def detect_flagged_tool_error(messages: list[Message]) -> Verdict | None:
    for message in _tool_results(messages):
        if not message.get("isError"):
            continue
        detail = first_text(message)
        code = extract_exit_code(detail)
        return Verdict(
            has_error=True,
            exit_code=1 if code is None else code,
            tool=str(message.get("toolName") or "tool"),
            detail=detail[:DETAIL_MAX_CHARS] if detail is not None else None,
        )
    return None


def detect_command_output_failure(messages: list[Message]) -> Verdict | None:
    for message in _tool_results(messages):
        if message.get("toolName") != COMMAND_TOOL:
            continue
        output = first_text(message)
        if output is None:
            continue
        code = extract_exit_code(output)
        if code is not None and code != 0:
            return Verdict(
                has_error=True,
                exit_code=code,
                tool=COMMAND_TOOL,
                detail=output[:DETAIL_MAX_CHARS],
            )
        if any(pattern.search(output) for pattern in _FATAL_PATTERNS):
            return Verdict(
                has_error=True,
                exit_code=1,
                tool=COMMAND_TOOL,
                detail=output[:DETAIL_MAX_CHARS],
            )
    return None


DETECTORS: tuple[Detector, ...] = (
    detect_flagged_tool_error,
    detect_command_output_failure,
)


def detect_failure(
    messages: list[Message], detectors: tuple[Detector, ...] = DETECTORS
) -> Verdict:
    for detector in detectors:
        verdict = detector(messages)
        if verdict is not None:
            return verdict
    return NO_ERROR
