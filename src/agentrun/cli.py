from __future__ import annotations

import asyncio
import json
import signal
from contextlib import suppress
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from agentrun.config.loader import YamlAgentRegistry, load_request, parse_request
from agentrun.config.schema import AGENT_SCOPES, ExecutionRequest
from agentrun.config.settings import Settings
from agentrun.dispatch import Dispatcher, ToolResult
from agentrun.exec.cancel import CancelToken
from agentrun.exec.events import final_output
from agentrun.jobs.correlator import CompletionCorrelator
from agentrun.jobs.model import CompletionPayload
from agentrun.report.render import format_usage, notification_text, recent_activity, results_table
from agentrun.util.errors import AgentConfigError, ConfigError, RequestError
from agentrun.util.log import configure_logging

app = typer.Typer(help="Dispatch agent workers: single, parallel or chained, sync or async")
console = Console()


def _split_assignment(raw: str, option: str) -> dict[str, str]:
    agent, sep, task = raw.partition("=")
    if not sep or not agent.strip():
        console.print(f"[red]{option} expects AGENT=TASK:[/red] {escape(raw)}")
        raise typer.Exit(2)
    return {"agent": agent.strip(), "task": task}


def _build_request(
    request_path: Path | None,
    *,
    agent: str | None,
    task: str | None,
    parallel: list[str] | None,
    chain: list[str] | None,
    run_async: bool | None,
    scope: str | None,
    cwd: Path | None,
) -> ExecutionRequest:
    if request_path is not None:
        request = load_request(request_path)
    else:
        raw: dict[str, Any] = {}
        if agent is not None:
            raw["agent"] = agent
        if task is not None:
            raw["task"] = task
        if parallel:
            raw["tasks"] = [_split_assignment(item, "--parallel") for item in parallel]
        if chain:
            raw["chain"] = [_split_assignment(item, "--chain") for item in chain]
        request = parse_request(raw)
    if run_async is not None:
        request.is_async = run_async
    if scope is not None:
        request.agent_scope = scope  # type: ignore[assignment]
    if cwd is not None:
        request.cwd = str(cwd)
    return request


def _settings_or_exit(results_dir: Path | None) -> Settings:
    try:
        return Settings.from_env(results_dir=results_dir)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc


def _print_notification(payload: CompletionPayload) -> None:
    console.print(Markdown(notification_text(payload)))


def _print_result(result: ToolResult) -> None:
    results = result.details.results
    if result.details.mode == "single" and len(results) == 1:
        single = results[0]
        icon = "[green]ok[/green]" if single.exit_code == 0 else "[red]X[/red]"
        console.print(f"{icon} [bold]{escape(single.agent)}[/bold]")
        for line in recent_activity(single):
            console.print(f"  [dim]{escape(line)}[/dim]")
        output = final_output(single.messages)
        if output and not result.is_error:
            console.print(Markdown(output))
        else:
            console.print(result.text, markup=False)
        usage = format_usage(single.usage, single.model)
        if usage:
            console.print(f"[dim]{escape(usage)}[/dim]")
        return
    if results:
        console.print(results_table(result.details.mode, results))
    color = "red" if result.is_error else "green"
    console.print(f"[{color}]{escape(result.text)}[/{color}]")


async def _wait_for_completions(
    correlator: CompletionCorrelator, done: asyncio.Event, timeout: float | None
) -> bool:
    try:
        await asyncio.wait_for(done.wait(), timeout=timeout)
    except TimeoutError:
        return False
    finally:
        await correlator.stop()
    return True


async def _run_request(
    dispatcher: Dispatcher,
    request: ExecutionRequest,
    *,
    live: bool,
    wait: bool,
    timeout: float | None,
) -> tuple[ToolResult, bool]:
    token = CancelToken()
    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        loop.add_signal_handler(signal.SIGTERM, token.cancel)

    correlator: CompletionCorrelator | None = None
    done = asyncio.Event()
    expected: dict[str, int] = {"remaining": 0}
    job_id: dict[str, str | None] = {"id": None}

    def _on_completion(payload: CompletionPayload) -> None:
        _print_notification(payload)
        if payload.id == job_id["id"]:
            expected["remaining"] -= 1
            if expected["remaining"] <= 0:
                done.set()

    if wait and request.is_async:
        correlator = CompletionCorrelator(
            dispatcher.settings.results_dir,
            _on_completion,
            debounce_sec=dispatcher.settings.debounce_sec,
            poll_interval_sec=dispatcher.settings.poll_interval_sec,
            clear_on_start=False,
        )
        await correlator.start()

    try:
        if live and not request.is_async:
            with console.status("running...") as status:

                def _on_update(update: ToolResult) -> None:
                    status.update(update.text.splitlines()[0][:100] if update.text else "")

                result = await dispatcher.execute(request, cancel=token, on_update=_on_update)
        else:
            result = await dispatcher.execute(request, cancel=token)
    except BaseException:
        if correlator is not None:
            await correlator.stop()
        raise

    if correlator is None:
        return result, True
    if result.is_error or result.details.async_id is None:
        await correlator.stop()
        return result, True
    job_id["id"] = result.details.async_id
    units = request.parallel if result.details.mode == "parallel" else None
    expected["remaining"] = len(units) if units else 1
    console.print(result.text, markup=False)
    return result, await _wait_for_completions(correlator, done, timeout)


@app.command()
def run(
    request_path: Annotated[Path | None, typer.Argument(exists=True, dir_okay=False)] = None,
    agent: Annotated[str | None, typer.Option("--agent")] = None,
    task: Annotated[str | None, typer.Option("--task")] = None,
    parallel: Annotated[
        list[str] | None, typer.Option("--parallel", help="AGENT=TASK, repeatable")
    ] = None,
    chain: Annotated[
        list[str] | None, typer.Option("--chain", help="AGENT=TASK, repeatable; {previous}")
    ] = None,
    run_async: Annotated[bool | None, typer.Option("--async/--sync")] = None,
    scope: Annotated[str | None, typer.Option("--scope")] = None,
    cwd: Annotated[Path | None, typer.Option("--cwd")] = None,
    results_dir: Annotated[Path | None, typer.Option("--results-dir")] = None,
    wait: Annotated[bool, typer.Option("--wait", help="async: wait for completion")] = False,
    timeout: Annotated[float | None, typer.Option("--timeout", min=0)] = None,
    as_json: Annotated[bool, typer.Option("--json")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    configure_logging(verbose)
    if scope is not None and scope not in AGENT_SCOPES:
        console.print(f"[red]Invalid scope:[/red] {escape(scope)}")
        raise typer.Exit(2)
    settings = _settings_or_exit(results_dir)
    try:
        request = _build_request(
            request_path,
            agent=agent,
            task=task,
            parallel=parallel,
            chain=chain,
            run_async=run_async,
            scope=scope,
            cwd=cwd,
        )
    except RequestError as exc:
        console.print(f"[red]Request error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc

    registry = YamlAgentRegistry(settings.user_agents_file, settings.project_agents_file)
    dispatcher = Dispatcher(registry, settings)
    try:
        result, completed = asyncio.run(
            _run_request(dispatcher, request, live=not as_json, wait=wait, timeout=timeout)
        )
    except AgentConfigError as exc:
        console.print(f"[red]Agent config error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc

    if as_json:
        typer.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    elif not (wait and request.is_async and not result.is_error):
        _print_result(result)
    if result.rejected:
        raise typer.Exit(2)
    if result.is_error:
        raise typer.Exit(3)
    if not completed:
        console.print("[yellow]Timed out waiting for completion[/yellow]")
        raise typer.Exit(4)


async def _watch(
    results_dir: Path, settings: Settings, *, count: int, timeout: float | None, clear: bool
) -> int:
    seen = 0
    done = asyncio.Event()

    def _on_completion(payload: CompletionPayload) -> None:
        nonlocal seen
        _print_notification(payload)
        seen += 1
        if count and seen >= count:
            done.set()

    correlator = CompletionCorrelator(
        results_dir,
        _on_completion,
        debounce_sec=settings.debounce_sec,
        poll_interval_sec=settings.poll_interval_sec,
        clear_on_start=clear,
    )
    await correlator.start()
    if count and seen >= count:
        await correlator.stop()
        return seen
    await _wait_for_completions(correlator, done, timeout)
    return seen


@app.command()
def watch(
    results_dir: Annotated[Path | None, typer.Option("--results-dir")] = None,
    count: Annotated[int, typer.Option("--count", min=0, help="exit after N; 0 = forever")] = 0,
    timeout: Annotated[float | None, typer.Option("--timeout", min=0)] = None,
    clear: Annotated[bool, typer.Option("--clear/--no-clear")] = True,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    configure_logging(verbose)
    settings = _settings_or_exit(results_dir)
    try:
        seen = asyncio.run(
            _watch(settings.results_dir, settings, count=count, timeout=timeout, clear=clear)
        )
    except KeyboardInterrupt:
        raise typer.Exit(0) from None
    except OSError as exc:
        console.print(f"[red]Cannot watch results directory:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc
    if count and seen < count:
        raise typer.Exit(4)


@app.command()
def agents(
    scope: Annotated[str, typer.Option("--scope")] = "both",
) -> None:
    if scope not in AGENT_SCOPES:
        console.print(f"[red]Invalid scope:[/red] {escape(scope)}")
        raise typer.Exit(2)
    settings = _settings_or_exit(None)
    registry = YamlAgentRegistry(settings.user_agents_file, settings.project_agents_file)
    try:
        found = registry.list_agents(scope)  # type: ignore[arg-type]
    except AgentConfigError as exc:
        console.print(f"[red]Agent config error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc
    table = Table(title=f"Agents ({scope})")
    table.add_column("name")
    table.add_column("model")
    table.add_column("tools")
    table.add_column("source")
    for item in found:
        table.add_row(item.name, item.model or "-", ",".join(item.tools) or "-", item.source or "-")
    console.print(table)


if __name__ == "__main__":
    app()
