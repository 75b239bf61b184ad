"""
Tools module - Tool base classes, registry and built-in tools.
"""

from .base import BaseTool, ToolError, ToolResult
from .commands import BashExecTool
from .filesystem import EditFileTool, ReadFileTool, WriteFileTool
from .registry import DuplicateToolError, ToolExecutionResult, ToolNotFoundError, ToolRegistry
from .schemas import BashExecArgs, EditFileArgs, ReadFileArgs, WriteFileArgs
from .setup import register_builtin_tools

__all__ = [
    "BaseTool",
    "ToolError",
    "ToolResult",
    "ToolRegistry",
    "ToolExecutionResult",
    "ToolNotFoundError",
    "DuplicateToolError",
    "ReadFileTool",
    "WriteFileTool",
    "EditFileTool",
    "BashExecTool",
    "ReadFileArgs",
    "WriteFileArgs",
    "EditFileArgs",
    "BashExecArgs",
    "register_builtin_tools",
]
