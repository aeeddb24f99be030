#!/usr/bin/env python3
"""Fake worker CLI for agentrun integration tests.

Behaviour is driven by ``[[directive arg]]`` markers inside the task text:

  [[reply TEXT]]      final assistant text (default: ``echo: <task>``)
  [[sleep SEC]]       sleep before answering
  [[exit N]]          exit with code N after answering
  [[stderr TEXT]]     write TEXT to stderr
  [[tool-error]]      emit a tool result flagged isError
  [[bash TEXT]]       emit a bash call whose output is TEXT
  [[error TEXT]]      set errorMessage on the final assistant message
  [[garbage]]         interleave malformed and unrecognized lines
  [[record PATH]]     dump argv, cwd and the system prompt to PATH
  [[ignore-term]]     ignore SIGTERM
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import sys
import time
from pathlib import Path

DIRECTIVE = re.compile(r"\[\[([\w-]+)(?:\s+([^\]]*))?\]\]")
USAGE = {"input": 100, "output": 20, "cacheRead": 5, "cacheWrite": 1, "cost": {"total": 0.001}}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fake worker for agentrun integration tests")
    parser.add_argument("--mode")
    parser.add_argument("-p", dest="print_mode", action="store_true")
    parser.add_argument("--no-session", action="store_true")
    parser.add_argument("--model")
    parser.add_argument("--tools")
    parser.add_argument("--append-system-prompt", type=Path)
    parser.add_argument("prompt")
    return parser.parse_args()


def emit(event_type: str, message: dict[str, object]) -> None:
    print(json.dumps({"type": event_type, "message": message}), flush=True)


def main() -> int:
    args = parse_args()
    task = args.prompt.removeprefix("Task: ")
    directives: dict[str, str] = {}
    for match in DIRECTIVE.finditer(task):
        directives[match.group(1)] = (match.group(2) or "").strip()
    streaming = args.mode == "json"

    if "ignore-term" in directives:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    if "record" in directives:
        prompt_path = args.append_system_prompt
        record = {
            "argv": sys.argv[1:],
            "cwd": os.getcwd(),
            "system_prompt": prompt_path.read_text(encoding="utf-8") if prompt_path else None,
            "prompt_mode": oct(prompt_path.stat().st_mode & 0o777) if prompt_path else None,
        }
        Path(directives["record"]).write_text(json.dumps(record), encoding="utf-8")

    if "sleep" in directives:
        time.sleep(float(directives["sleep"] or 0))

    if "garbage" in directives and streaming:
        print("not json at all", flush=True)
        print(json.dumps({"type": "agent_start"}), flush=True)
        print("", flush=True)
        print("[1, 2, 3]", flush=True)

    if streaming and "tool-error" in directives:
        emit(
            "message_end",
            {
                "role": "assistant",
                "content": [{"type": "toolCall", "id": "t1", "name": "read", "arguments": {}}],
            },
        )
        emit(
            "tool_result_end",
            {
                "role": "toolResult",
                "toolCallId": "t1",
                "toolName": "read",
                "isError": True,
                "content": [{"type": "text", "text": "Command exited with code 2"}],
            },
        )

    if streaming and "bash" in directives:
        emit(
            "message_end",
            {
                "role": "assistant",
                "content": [
                    {
                        "type": "toolCall",
                        "id": "b1",
                        "name": "bash",
                        "arguments": {"command": "make build"},
                    }
                ],
            },
        )
        emit(
            "tool_result_end",
            {
                "role": "toolResult",
                "toolCallId": "b1",
                "toolName": "bash",
                "isError": False,
                "content": [{"type": "text", "text": directives["bash"]}],
            },
        )

    reply = directives.get("reply") or f"echo: {DIRECTIVE.sub('', task).strip()}"
    if streaming:
        final: dict[str, object] = {
            "role": "assistant",
            "content": [{"type": "text", "text": reply}],
            "usage": USAGE,
            "model": args.model or "fake-model",
        }
        if "error" in directives:
            final["errorMessage"] = directives["error"]
        emit("message_end", final)
    else:
        print(reply, flush=True)

    if "stderr" in directives:
        print(directives["stderr"], file=sys.stderr, flush=True)
    if "exit" in directives:
        return int(directives["exit"] or 1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
