"""Custom exceptions for cjode."""


class CjodeError(Exception):
    """Base exception for cjode."""

    pass


class ConfigurationError(CjodeError):
    """Configuration-related errors."""

    pass


class LLMError(CjodeError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(CjodeError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool input or output does not match the declared schema."""

    def __init__(self, tool_name: str, message: str, stage: str = "input"):
        super().__init__(f"Invalid {stage} for tool '{tool_name}': {message}")
        self.tool_name = tool_name
        self.stage = stage


class PathEscapeError(ToolError):
    """A path resolved outside the workspace root."""

    def __init__(self, path: str, root: str):
        super().__init__(f"Path must be within workspace root {root}: {path}")
        self.path = path
        self.root = root


class FileReadError(ToolExecutionError):
    def __init__(self, path: str, reason: str):
        super().__init__("read", f"Failed to read file {path}: {reason}")
        self.path = path


class DirectoryReadError(ToolExecutionError):
    def __init__(self, path: str, reason: str):
        super().__init__("list_dir", f"Failed to list directory {path}: {reason}")
        self.path = path


class FileWriteError(ToolExecutionError):
    def __init__(self, path: str, reason: str):
        super().__init__("write_file", f"Failed to write file {path}: {reason}")
        self.path = path


class FileEditError(ToolExecutionError):
    def __init__(self, path: str, reason: str):
        super().__init__("edit_file", f"Failed to edit file {path}: {reason}")
        self.path = path


class SearchError(ToolExecutionError):
    """Glob or content search failed."""

    pass


class UnsafeCommandError(ToolExecutionError):
    """Shell command rejected by the safety gate."""

    def __init__(self, command: str, reason: str = ""):
        message = f"Command is potentially destructive: {command}"
        if reason:
            message += f" ({reason})"
        super().__init__("bash", message)
        self.command = command
        self.reason = reason


class CommandTimeoutError(ToolExecutionError):
    def __init__(self, command: str, timeout: float):
        label = int(timeout) if float(timeout).is_integer() else timeout
        super().__init__("bash", f"Command timed out after {label}s: {command}")
        self.command = command
        self.timeout = timeout


class CommandOutputTooLargeError(ToolExecutionError):
    def __init__(self, command: str, limit: int):
        super().__init__("bash", f"Command output exceeded {limit} bytes: {command}")
        self.command = command
        self.limit = limit


class CommandFailedError(ToolExecutionError):
    """Shell command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int | None, stderr: str = ""):
        message = f"Command failed with exit code {exit_code}"
        if stderr:
            message += f": {stderr}"
        super().__init__("bash", message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class AgentRunError(CjodeError):
    """Agent run ended in the failed state."""

    def __init__(self, message: str, reason: str = "error"):
        super().__init__(message)
        self.reason = reason
