"""
Tools for local filesystem operations.

read_file, write_file and edit_file, all confined to the project
directory plus the directories the user authorized.
"""

import asyncio
import difflib
from typing import Any

from ..execution.validators import PathAccess, validate_path
from .base import BaseTool, ToolError
from .schemas import EditFileArgs, ReadFileArgs, WriteFileArgs


class ReadFileTool(BaseTool):
    """Reads a text file."""

    name = "read_file"
    description = (
        "Read the full content of a text file. Use it to inspect code, "
        "configuration or any other text file."
    )
    sensitive = False
    args_model = ReadFileArgs

    def __init__(self, access: PathAccess) -> None:
        self.access = access

    async def execute(self, args: ReadFileArgs, signal: asyncio.Event | None = None) -> Any:
        file_path = validate_path(args.path, self.access)
        if not file_path.is_file():
            raise ToolError(f"File not found: {args.path}")
        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except UnicodeDecodeError:
            raise ToolError(f"{args.path} is not a valid UTF-8 text file")
        return {"path": args.path, "content": content, "lines": content.count("\n") + 1}


class WriteFileTool(BaseTool):
    """Creates or overwrites a file."""

    name = "write_file"
    description = (
        "Create a file or replace its whole content. For partial changes to an "
        "existing file use edit_file. Parent directories are created."
    )
    sensitive = True
    args_model = WriteFileArgs

    def __init__(self, access: PathAccess) -> None:
        self.access = access

    async def execute(self, args: WriteFileArgs, signal: asyncio.Event | None = None) -> Any:
        file_path = validate_path(args.path, self.access)
        created = not file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_text, args.content, encoding="utf-8")
        return {"path": args.path, "created": created, "bytes": len(args.content.encode("utf-8"))}


class EditFileTool(BaseTool):
    """Replaces an exact, unique block of text in a file (str_replace)."""

    name = "edit_file"
    description = (
        "Replace an exact block of text in a file. old_str must be unique in the "
        "file; include neighbouring lines if it is ambiguous. Prefer it over "
        "write_file for partial modifications."
    )
    sensitive = True
    args_model = EditFileArgs

    def __init__(self, access: PathAccess) -> None:
        self.access = access

    async def execute(self, args: EditFileArgs, signal: asyncio.Event | None = None) -> Any:
        file_path = validate_path(args.path, self.access)
        if not file_path.is_file():
            raise ToolError(f"File not found: {args.path}")

        original = await asyncio.to_thread(file_path.read_text, encoding="utf-8")

        count = original.count(args.old_str)
        if count == 0:
            raise ToolError(
                f"old_str not found in {args.path}. "
                "Check whitespace, indentation and line breaks."
            )
        if count > 1:
            raise ToolError(
                f"old_str appears {count} times in {args.path}. "
                "Add surrounding lines to make it unique."
            )

        modified = original.replace(args.old_str, args.new_str, 1)
        await asyncio.to_thread(file_path.write_text, modified, encoding="utf-8")

        diff_lines = difflib.unified_diff(
            original.splitlines(),
            modified.splitlines(),
            fromfile=f"a/{args.path}",
            tofile=f"b/{args.path}",
            lineterm="",
        )
        return {"path": args.path, "diff": "\n".join(diff_lines)}
