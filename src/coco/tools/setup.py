"""
Setup helpers for registering the built-in tools.
"""

from ..config.schema import WorkspaceConfig
from ..execution.validators import PathAccess
from .commands import BashExecTool
from .filesystem import EditFileTool, ReadFileTool, WriteFileTool
from .registry import ToolRegistry


def register_builtin_tools(
    registry: ToolRegistry,
    workspace_config: WorkspaceConfig,
    access: PathAccess | None = None,
) -> PathAccess:
    """Register read_file, write_file, edit_file and bash_exec.

    Args:
        registry: Registry where the tools are registered
        workspace_config: Workspace configuration
        access: Shared authorized-directory set. Built from the config if None.

    Returns:
        The PathAccess the file tools use, so callers can authorize
        directories later in the session.
    """
    if access is None:
        access = PathAccess(workspace_config.root, list(workspace_config.allowed_paths))

    registry.register(ReadFileTool(access))
    registry.register(WriteFileTool(access))
    registry.register(EditFileTool(access))
    registry.register(BashExecTool(access.root))
    return access
