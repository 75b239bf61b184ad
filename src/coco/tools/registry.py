"""
Centralized registry of available tools.

The ToolRegistry keeps every tool, hands their definitions to the model
and executes calls by name. Execution never raises: unknown tools,
invalid input, cancellation and tool failures all come back as a
ToolExecutionResult with success=False.
"""

import asyncio
import time
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from .base import BaseTool

logger = structlog.get_logger()


class ToolNotFoundError(Exception):
    """Error raised when a requested tool does not exist in the registry."""

    pass


class DuplicateToolError(Exception):
    """Error raised when attempting to register a tool with a duplicate name."""

    pass


class ToolExecutionResult(BaseModel):
    """Uniform outcome of ToolRegistry.execute().

    Attributes:
        success: True if the tool returned normally
        data: Structured data returned by the tool (success only)
        error: Error text (failure only)
        duration: Wall-clock seconds spent in the call
    """

    success: bool
    data: Any = None
    error: str | None = None
    duration: float = 0.0

    model_config = {"extra": "forbid"}


def format_validation_error(tool_name: str, exc: ValidationError) -> str:
    """Render a pydantic ValidationError as a single readable line."""
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "input"
        problems.append(f"{loc}: {err.get('msg', 'invalid')}")
    return f"Invalid input for tool '{tool_name}': " + "; ".join(problems)


class ToolRegistry:
    """Centralized tool registry.

    Maintains a dictionary of available tools and provides methods for
    registering, looking up and executing them.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._tools: dict[str, BaseTool] = {}
        self.log = logger.bind(component="tool_registry")

    def register(self, tool: BaseTool, allow_override: bool = False) -> None:
        """Register a new tool.

        Args:
            tool: BaseTool instance to register
            allow_override: If True, allows overwriting existing tools

        Raises:
            DuplicateToolError: If the tool already exists and allow_override=False
        """
        if tool.name in self._tools and not allow_override:
            raise DuplicateToolError(
                f"Tool '{tool.name}' is already registered. "
                f"Use allow_override=True to overwrite."
            )

        self._tools[tool.name] = tool
        self.log.debug("tool.registered", tool=tool.name, sensitive=tool.sensitive)

    def get(self, name: str) -> BaseTool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError: If the tool does not exist
        """
        if name not in self._tools:
            available = ", ".join(self._tools.keys()) if self._tools else "(none)"
            raise ToolNotFoundError(f"Tool '{name}' not found. Available tools: {available}")

        return self._tools[name]

    def list_all(self) -> list[BaseTool]:
        """List all registered tools, sorted by name."""
        return sorted(self._tools.values(), key=lambda t: t.name)

    def get_tool_definitions_for_llm(self, allowed: list[str] | None = None) -> list[dict[str, Any]]:
        """Return ``[{name, description, input_schema}]`` for the model.

        Unknown names in ``allowed`` are skipped silently.

        Args:
            allowed: List of allowed tool names, or None for all
        """
        if allowed:
            tools = [self._tools[name] for name in allowed if name in self._tools]
        else:
            tools = self.list_all()
        return [tool.get_definition() for tool in tools]

    async def execute(
        self,
        name: str,
        input: dict[str, Any],
        signal: asyncio.Event | None = None,
    ) -> ToolExecutionResult:
        """Validate and execute a tool call.

        Args:
            name: Tool name
            input: Raw input emitted by the model
            signal: Shared cancellation event

        Returns:
            ToolExecutionResult (never raises)
        """
        start = time.monotonic()

        tool = self._tools.get(name)
        if tool is None:
            return ToolExecutionResult(success=False, error=f"Tool '{name}' not found")

        if signal is not None and signal.is_set():
            return ToolExecutionResult(success=False, error="Operation cancelled")

        try:
            args = tool.validate_args(input)
        except ValidationError as e:
            return ToolExecutionResult(
                success=False,
                error=format_validation_error(name, e),
                duration=time.monotonic() - start,
            )

        try:
            data = await tool.execute(args, signal=signal)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.debug("tool.execute.error", tool=name, error=str(e), error_type=type(e).__name__)
            return ToolExecutionResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration=time.monotonic() - start,
            )

        return ToolExecutionResult(success=True, data=data, duration=time.monotonic() - start)

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def count(self) -> int:
        """Return the number of registered tools."""
        return len(self._tools)

    def clear(self) -> None:
        """Remove all tools from the registry.

        Primarily useful for testing.
        """
        self._tools.clear()

    def __repr__(self) -> str:
        return f"<ToolRegistry({self.count()} tools)>"

    def __len__(self) -> int:
        return self.count()
