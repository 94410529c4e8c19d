class TaskPilotError(Exception):
    """Base class for runner errors."""


class BackendConnectionError(TaskPilotError, ConnectionError):
    """A tool backend could not be launched or failed the handshake."""

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"Backend '{backend}': {message}")
        self.backend = backend


class ToolNotFoundError(TaskPilotError, LookupError):
    """No connected backend advertises the requested tool."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class BackendError(TaskPilotError):
    """A backend reported a failure while executing a tool."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class CompletionServiceError(TaskPilotError):
    """The completion service request failed. Fatal for the session."""
