"""Application-level error types."""


class AgentRunError(Exception):
    """Base error for agentrun."""


class ConfigError(AgentRunError):
    """Raised when settings cannot be resolved from the environment."""


class RequestError(AgentRunError):
    """Raised when a request file cannot be loaded or has the wrong shape."""


class AgentConfigError(AgentRunError):
    """Raised when an agent registry file is invalid."""


class JobConfigError(AgentRunError):
    """Raised when a detached job config cannot be read."""


class ValidationError(AgentRunError):
    """Raised when a request is rejected before anything is spawned."""

    def __init__(self, message: str, *, unknown_agents: list[str] | None = None) -> None:
        super().__init__(message)
        self.unknown_agents = unknown_agents or []
