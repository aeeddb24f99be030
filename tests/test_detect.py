from __future__ import annotations

import pytest

from agentrun.exec.detect import (
    DETAIL_MAX_CHARS,
    detect_command_output_failure,
    detect_failure,
    detect_flagged_tool_error,
    extract_exit_code,
)


def _tool_result(text: str, *, tool: str = "bash", is_error: bool = False) -> dict[str, object]:
    return {
        "role": "toolResult",
        "toolCallId": "c1",
        "toolName": tool,
        "isError": is_error,
        "content": [{"type": "text", "text": text}],
    }


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("exit code 2", 2),
        ("Command exited with code 127", 127),
        ("process exit status: 3", 3),
        ("EXITED 5", 5),
        ("all good", None),
        (None, None),
    ],
)
def test_extract_exit_code(text: str | None, expected: int | None) -> None:
    assert extract_exit_code(text) == expected


def test_clean_transcript_has_no_error() -> None:
    messages = [
        {"role": "assistant", "content": [{"type": "text", "text": "hi"}]},
        _tool_result("build ok\nexit code 0"),
    ]
    verdict = detect_failure(messages)
    assert verdict.has_error is False


def test_flagged_tool_error_uses_extracted_code() -> None:
    verdict = detect_failure([_tool_result("Command exited with code 2", tool="read", is_error=True)])
    assert verdict.has_error is True
    assert verdict.exit_code == 2
    assert verdict.tool == "read"
    assert verdict.message() == "read failed (exit 2): Command exited with code 2"


def test_flagged_tool_error_defaults_to_one_and_truncates() -> None:
    long_text = "x" * (DETAIL_MAX_CHARS + 50)
    verdict = detect_flagged_tool_error([_tool_result(long_text, tool="edit", is_error=True)])
    assert verdict is not None
    assert verdict.exit_code == 1
    assert verdict.detail is not None
    assert len(verdict.detail) == DETAIL_MAX_CHARS


def test_flagged_tool_error_without_text_has_short_message() -> None:
    verdict = detect_flagged_tool_error(
        [{"role": "toolResult", "isError": True, "content": []}]
    )
    assert verdict is not None
    assert verdict.message() == "tool failed with exit code 1"


def test_bash_nonzero_exit_phrase_is_failure() -> None:
    verdict = detect_command_output_failure([_tool_result("make: *** Error\nexit code 2")])
    assert verdict is not None
    assert verdict.exit_code == 2
    assert verdict.tool == "bash"


@pytest.mark.parametrize(
    "output",
    [
        "sh: foo: command not found",
        "open: Permission denied",
        "cat: x: No such file or directory",
        "Segmentation fault (core dumped)",
        "Killed",
        "process terminated",
        "fatal: Out of memory",
        "curl: (7) Connection refused",
        "request TIMEOUT after 30s",
    ],
)
def test_bash_fatal_phrases(output: str) -> None:
    verdict = detect_failure([_tool_result(output)])
    assert verdict.has_error is True
    assert verdict.exit_code == 1
    assert verdict.tool == "bash"


def test_fatal_phrase_in_other_tool_is_ignored() -> None:
    verdict = detect_failure([_tool_result("permission denied", tool="read")])
    assert verdict.has_error is False


def test_flagged_error_wins_over_bash_output() -> None:
    messages = [
        _tool_result("permission denied"),
        _tool_result("boom", tool="write", is_error=True),
    ]
    verdict = detect_failure(messages)
    assert verdict.tool == "write"


def test_custom_detector_order() -> None:
    messages = [_tool_result("permission denied")]
    verdict = detect_failure(messages, detectors=(detect_flagged_tool_error,))
    assert verdict.has_error is False
