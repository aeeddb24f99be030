from __future__ import annotations

import errno
import os
import re
import stat
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml

from agentrun.config.schema import AGENT_SCOPES, AgentConfig, AgentScope, ExecutionRequest, TaskSpec
from agentrun.util.errors import AgentConfigError, RequestError
from agentrun.util.paths import has_symlink_ancestor

_SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_AGENT_NAME_MAX_LEN = 128
_ALLOWED_REGISTRY_KEYS = {"agents"}
_ALLOWED_AGENT_KEYS = {"name", "model", "tools", "system_prompt"}
_ALLOWED_REQUEST_KEYS = {"agent", "task", "tasks", "chain", "async", "agent_scope", "cwd"}
_ALLOWED_TASK_KEYS = {"agent", "task", "cwd"}


class AgentRegistry(Protocol):
    def list_agents(self, scope: AgentScope) -> list[AgentConfig]: ...


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _read_text(path: Path, error_cls: type[Exception]) -> str | None:
    """Read a regular, non-symlink file. Returns None when it does not exist."""
    if has_symlink_ancestor(path):
        raise error_cls(f"file path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError:
        return None
    except (OSError, RuntimeError) as exc:
        raise error_cls(f"failed to read file: {path}") from exc
    if stat.S_ISLNK(meta.st_mode):
        raise error_cls(f"file must not be symlink: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise error_cls(f"failed to read file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            return f.read()
    except FileNotFoundError:
        return None
    except UnicodeError as exc:
        raise error_cls(f"failed to decode file as utf-8: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise error_cls(f"file must not be symlink: {path}") from exc
        raise error_cls(f"failed to read file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)


def _parse_agent(raw: Any, source: str) -> AgentConfig:
    if not isinstance(raw, dict):
        raise AgentConfigError("agent must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise AgentConfigError("agent fields must use string keys")
    name = raw.get("name")
    if not _is_non_blank_str(name):
        raise AgentConfigError("agent.name is required and must be non-empty string")
    if len(name) > _AGENT_NAME_MAX_LEN or _SAFE_NAME_PATTERN.fullmatch(name) is None:
        raise AgentConfigError(f"agent.name must match {_SAFE_NAME_PATTERN.pattern}")
    unknown = set(raw.keys()) - _ALLOWED_AGENT_KEYS
    if unknown:
        raise AgentConfigError(f"agent '{name}' has unknown fields: {sorted(unknown)}")

    model = raw.get("model")
    if model is not None and not _is_non_blank_str(model):
        raise AgentConfigError(f"agent '{name}' model must be non-empty string")
    tools = raw.get("tools", [])
    if tools is None:
        tools = []
    if not isinstance(tools, list) or not all(_is_non_blank_str(t) for t in tools):
        raise AgentConfigError(f"agent '{name}' tools must be list[str]")
    system_prompt = raw.get("system_prompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise AgentConfigError(f"agent '{name}' system_prompt must be string")

    return AgentConfig(
        name=name,
        model=model,
        tools=list(tools),
        system_prompt=system_prompt,
        source=source,
    )


def load_agents(path: Path, source: str) -> list[AgentConfig]:
    """Load an agents file. A missing file is an empty list."""
    content = _read_text(path, AgentConfigError)
    if content is None:
        return []
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise AgentConfigError(f"failed to parse yaml: {exc}") from exc
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise AgentConfigError("agents file root must be a mapping")
    unknown_root = set(raw.keys()) - _ALLOWED_REGISTRY_KEYS
    if unknown_root:
        raise AgentConfigError(f"agents file contains unknown fields: {sorted(unknown_root)}")
    raw_agents = raw.get("agents") or []
    if not isinstance(raw_agents, list):
        raise AgentConfigError("agents must be a list")

    agents = [_parse_agent(item, source) for item in raw_agents]
    names = [agent.name for agent in agents]
    if len(set(names)) != len(names):
        raise AgentConfigError(f"agent names must be unique in {path}")
    return agents


@dataclass(slots=True)
class YamlAgentRegistry:
    user_file: Path
    project_file: Path

    def list_agents(self, scope: AgentScope) -> list[AgentConfig]:
        if scope not in AGENT_SCOPES:
            raise AgentConfigError(f"unknown agent scope: {scope}")
        by_name: dict[str, AgentConfig] = {}
        if scope in {"user", "both"}:
            for agent in load_agents(self.user_file, "user"):
                by_name[agent.name] = agent
        if scope in {"project", "both"}:
            for agent in load_agents(self.project_file, "project"):
                by_name[agent.name] = agent
        return list(by_name.values())


@dataclass(slots=True)
class StaticAgentRegistry:
    agents: list[AgentConfig]

    def list_agents(self, scope: AgentScope) -> list[AgentConfig]:
        return list(self.agents)


def _parse_task(raw: Any, field_name: str) -> TaskSpec:
    if not isinstance(raw, dict):
        raise RequestError(f"{field_name} entries must be mappings")
    unknown = set(raw.keys()) - _ALLOWED_TASK_KEYS
    if unknown:
        raise RequestError(f"{field_name} entry has unknown fields: {sorted(unknown)}")
    agent = raw.get("agent")
    task = raw.get("task")
    if not _is_non_blank_str(agent):
        raise RequestError(f"{field_name}.agent must be non-empty string")
    if not isinstance(task, str):
        raise RequestError(f"{field_name}.task must be string")
    cwd = raw.get("cwd")
    if cwd is not None and not _is_non_blank_str(cwd):
        raise RequestError(f"{field_name}.cwd must be non-empty string")
    return TaskSpec(agent=agent, task=task, cwd=cwd)


def _parse_task_list(raw: Any, field_name: str) -> list[TaskSpec] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise RequestError(f"{field_name} must be a list")
    return [_parse_task(item, field_name) for item in raw]


def parse_request(raw: Any) -> ExecutionRequest:
    """Build a request from the tool parameter shape. Mode exclusivity is checked later."""
    if not isinstance(raw, dict):
        raise RequestError("request root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise RequestError("request keys must be strings")
    unknown = set(raw.keys()) - _ALLOWED_REQUEST_KEYS
    if unknown:
        raise RequestError(f"request contains unknown fields: {sorted(unknown)}")

    agent = raw.get("agent")
    task = raw.get("task")
    if agent is not None and not isinstance(agent, str):
        raise RequestError("agent must be string")
    if task is not None and not isinstance(task, str):
        raise RequestError("task must be string")
    cwd = raw.get("cwd")
    if cwd is not None and not _is_non_blank_str(cwd):
        raise RequestError("cwd must be non-empty string")
    single = TaskSpec(agent=agent, task=task) if agent and task else None

    is_async = raw.get("async", True)
    if not isinstance(is_async, bool):
        raise RequestError("async must be boolean")
    scope = raw.get("agent_scope", "user")
    if scope not in AGENT_SCOPES:
        raise RequestError(f"agent_scope must be one of {sorted(AGENT_SCOPES)}")

    return ExecutionRequest(
        single=single,
        parallel=_parse_task_list(raw.get("tasks"), "tasks"),
        chain=_parse_task_list(raw.get("chain"), "chain"),
        is_async=is_async,
        agent_scope=scope,
        cwd=cwd,
    )


def load_request(path: Path) -> ExecutionRequest:
    content = _read_text(path, RequestError)
    if content is None:
        raise RequestError(f"request file not found: {path}")
    try:
        # safe_load also accepts the JSON request files.
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise RequestError(f"failed to parse request: {exc}") from exc
    return parse_request(raw)
