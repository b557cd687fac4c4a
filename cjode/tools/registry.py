"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from cjode.exceptions import (
    CjodeError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
)
from cjode.logging import get_logger

log = get_logger(__name__)


class ToolInput(BaseModel):
    """Base for tool argument models; unknown arguments are rejected."""

    model_config = ConfigDict(extra="forbid")


class ToolOutput(BaseModel):
    """Base for tool result models."""

    model_config = ConfigDict(extra="forbid")


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


def _strip_titles(schema: Any) -> Any:
    """Drop pydantic's auto-generated ``title`` keys from a JSON schema."""
    if isinstance(schema, dict):
        return {
            key: _strip_titles(value)
            for key, value in schema.items()
            if not (key == "title" and isinstance(value, str))
        }
    if isinstance(schema, list):
        return [_strip_titles(item) for item in schema]
    return schema


def format_validation_error(error: ValidationError) -> str:
    """Render a pydantic ValidationError as one line the model can act on."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


class Tool(ABC):
    """Base class for all tools.

    Subclasses declare ``input_model``/``output_model`` and implement
    ``execute``, which receives the validated input plus the injected
    ``_workspace_root`` and ``_abort_event`` keyword arguments. Failures are
    raised as ``ToolExecutionError`` subclasses.
    """

    name: str = ""
    description: str = ""
    input_model: type[ToolInput] = ToolInput
    output_model: type[ToolOutput] = ToolOutput
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, params: Any, **kwargs: Any) -> ToolOutput:
        """Execute the tool.

        Args:
            params: Validated ``input_model`` instance
            **kwargs: Runtime context injected by the registry

        Returns:
            ``output_model`` instance (or a dict matching it)
        """
        pass

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the tool arguments, generated from ``input_model``."""
        return _strip_titles(self.input_model.model_json_schema())

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> ToolInput:
        """Validate raw model arguments against ``input_model``.

        Raises:
            ToolValidationError: If arguments do not conform
        """
        if not isinstance(arguments, dict):
            raise ToolValidationError(self.name, "arguments must be a JSON object")
        try:
            return self.input_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolValidationError(self.name, format_validation_error(e))

    def validate_output(self, payload: Any) -> ToolOutput:
        """Validate a tool payload against ``output_model``.

        Raises:
            ToolValidationError: If the payload does not conform
        """
        if isinstance(payload, self.output_model):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            return self.output_model.model_validate(payload)
        except ValidationError as e:
            raise ToolValidationError(self.name, format_validation_error(e), stage="output")

    @staticmethod
    def workspace_root(kwargs: dict[str, Any]) -> Path:
        """Workspace root injected by the registry (process cwd when absent)."""
        root = kwargs.get("_workspace_root")
        return Path(root) if root is not None else Path.cwd()


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, workspace_root: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._workspace_root = Path.cwd()
        self.set_workspace_root(workspace_root or Path.cwd())

    def set_workspace_root(self, workspace_root: Path | str) -> None:
        """Set the directory every path-taking tool is confined to."""
        self._workspace_root = Path(workspace_root).expanduser().resolve()

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Validate arguments, execute a tool by name and validate its output.

        Args:
            name: Tool name
            arguments: Raw tool arguments produced by the model
            abort_event: Set by the caller to cancel the in-flight tool

        Returns:
            ToolResult whose ``data`` is the validated output payload

        Raises:
            ToolNotFoundError if tool not found
            ToolValidationError if input or output does not conform
            ToolExecutionError (or subclass) if execution fails
        """
        tool = self.get(name)
        params = tool.validate_arguments(arguments)

        # Execute with timeout / abort propagation
        execute_task: asyncio.Task[Any] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            if abort_event is not None:
                if abort_event.is_set():
                    raise ToolExecutionError(name, "Execution aborted")
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    params,
                    _workspace_root=self.workspace_root,
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                output = tool.validate_output(await execute_task)
                log.info("Tool executed", tool=name, success=True)
                return ToolResult(
                    success=True,
                    content=output.model_dump_json(exclude_none=True),
                    data=output.model_dump(exclude_none=True),
                )

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except CjodeError as e:
            log.warning("Tool execution failed", tool=name, error=str(e))
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        from cjode.tools import build_default_registry
        _registry = build_default_registry()
    return _registry


def set_tool_registry(registry: ToolRegistry | None) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
