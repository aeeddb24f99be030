from __future__ import annotations

import json
import os
from typing import Any

from rich.markup import escape
from rich.table import Table

from agentrun.exec.events import StepResult, Usage, display_items, final_output
from agentrun.jobs.model import CompletionPayload

COLLAPSED_ITEMS = 8


def format_tokens(n: int) -> str:
    if n < 1000:
        return str(n)
    if n < 10000:
        return f"{n / 1000:.1f}k"
    return f"{round(n / 1000)}k"


def format_usage(usage: Usage, model: str | None = None) -> str:
    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'s' if usage.turns > 1 else ''}")
    if usage.input_tokens:
        parts.append(f"in:{format_tokens(usage.input_tokens)}")
    if usage.output_tokens:
        parts.append(f"out:{format_tokens(usage.output_tokens)}")
    if usage.cache_read_tokens:
        parts.append(f"R{format_tokens(usage.cache_read_tokens)}")
    if usage.cache_write_tokens:
        parts.append(f"W{format_tokens(usage.cache_write_tokens)}")
    if usage.cost:
        parts.append(f"${usage.cost:.4f}")
    if model:
        parts.append(model)
    return " ".join(parts)


def _shorten_path(path: str) -> str:
    home = os.path.expanduser("~")
    return "~" + path[len(home) :] if path.startswith(home) else path


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def format_tool_call(name: str, args: dict[str, Any]) -> str:
    if name == "bash":
        return f"$ {_clip(str(args.get('command') or ''), 60)}"
    if name in {"read", "write", "edit"}:
        target = args.get("path") or args.get("file_path") or ""
        return f"{name} {_shorten_path(str(target))}"
    return f"{name} {_clip(json.dumps(args), 40)}"


def notification_text(payload: CompletionPayload) -> str:
    status = "completed" if payload.success else "failed"
    position = ""
    if payload.task_index is not None and payload.total_tasks is not None:
        position = f" ({payload.task_index + 1}/{payload.total_tasks})"
    return f"Background task {status}: **{payload.label}**{position}\n\n{payload.summary}"


def results_table(title: str, results: list[StepResult]) -> Table:
    ok = sum(1 for result in results if result.exit_code == 0)
    table = Table(title=f"{title} {ok}/{len(results)}")
    table.add_column("#", justify="right")
    table.add_column("agent")
    table.add_column("exit_code", justify="right")
    table.add_column("usage")
    table.add_column("output / error")
    for idx, result in enumerate(results, start=1):
        if result.exit_code == 0:
            detail = escape(_clip(final_output(result.messages) or "(no output)", 80))
        else:
            detail = f"[red]{escape(_clip(result.error or 'failed', 80))}[/red]"
        table.add_row(
            str(idx),
            escape(result.agent),
            str(result.exit_code),
            format_usage(result.usage, result.model),
            detail,
        )
    return table


def recent_activity(result: StepResult, limit: int = COLLAPSED_ITEMS) -> list[str]:
    """Last ``limit`` assistant texts and tool calls, one line each."""
    lines: list[str] = []
    for item in display_items(result.messages)[-limit:]:
        if item.kind == "tool":
            lines.append(format_tool_call(item.name, item.args))
        else:
            lines.append(_clip(item.text, 80))
    return lines
