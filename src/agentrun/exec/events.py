"""Worker event stream model: usage accounting and per-step results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Message = dict[str, Any]
EventType = Literal["message_end", "tool_result_end"]
RECOGNIZED_EVENTS: set[str] = {"message_end", "tool_result_end"}


def _as_number(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0
    turns: int = 0

    def add_turn(self, raw: object) -> None:
        """Count one assistant turn and fold in its usage block, if any."""
        self.turns += 1
        if not isinstance(raw, dict):
            return
        self.input_tokens += int(_as_number(raw.get("input")))
        self.output_tokens += int(_as_number(raw.get("output")))
        self.cache_read_tokens += int(_as_number(raw.get("cacheRead")))
        self.cache_write_tokens += int(_as_number(raw.get("cacheWrite")))
        cost = raw.get("cost")
        if isinstance(cost, dict):
            self.cost += _as_number(cost.get("total"))

    def to_dict(self) -> dict[str, object]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cost": self.cost,
            "turns": self.turns,
        }


@dataclass(slots=True)
class StepResult:
    agent: str
    task: str
    exit_code: int = 0
    messages: list[Message] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    model: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "agent": self.agent,
            "task": self.task,
            "exit_code": self.exit_code,
            "messages": self.messages,
            "usage": self.usage.to_dict(),
            "model": self.model,
            "error": self.error,
            "output": final_output(self.messages),
        }


@dataclass(slots=True)
class WorkerEvent:
    type: EventType
    message: Message


def parse_event_line(line: str) -> WorkerEvent | None:
    """Parse one stdout line. Blank, malformed and unrecognized lines yield None."""
    if not line.strip():
        return None
    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(raw, dict):
        return None
    event_type = raw.get("type")
    message = raw.get("message")
    if event_type not in RECOGNIZED_EVENTS or not isinstance(message, dict):
        return None
    return WorkerEvent(type=event_type, message=message)


def _content_parts(message: Message) -> list[dict[str, Any]]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [part for part in content if isinstance(part, dict)]


def first_text(message: Message) -> str | None:
    for part in _content_parts(message):
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            return part["text"]
    return None


def final_output(messages: list[Message]) -> str:
    """Return the first text part of the most recent assistant message that has one."""
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        text = first_text(message)
        if text is not None:
            return text
    return ""


def tool_calls(message: Message) -> list[dict[str, Any]]:
    if message.get("role") != "assistant":
        return []
    return [part for part in _content_parts(message) if part.get("type") == "toolCall"]


@dataclass(slots=True)
class DisplayItem:
    kind: Literal["text", "tool"]
    text: str = ""
    name: str = ""
    args: dict[str, Any] = field(default_factory=dict)


def display_items(messages: list[Message]) -> list[DisplayItem]:
    items: list[DisplayItem] = []
    for message in messages:
        if message.get("role") != "assistant":
            continue
        for part in _content_parts(message):
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                items.append(DisplayItem(kind="text", text=part["text"]))
            elif part.get("type") == "toolCall":
                args = part.get("arguments")
                items.append(
                    DisplayItem(
                        kind="tool",
                        name=str(part.get("name") or ""),
                        args=args if isinstance(args, dict) else {},
                    )
                )
    return items
