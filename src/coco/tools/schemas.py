"""
Pydantic models for tool arguments.

Each tool declares its argument schema as a Pydantic model, which gives
validation before execution and the JSON Schema handed to the model.
"""

from pydantic import BaseModel, Field


class ReadFileArgs(BaseModel):
    """Arguments for the read_file tool."""

    path: str = Field(
        description="Path of the file to read, relative to the project",
        examples=["README.md", "src/main.py"],
    )

    model_config = {"extra": "forbid"}


class WriteFileArgs(BaseModel):
    """Arguments for the write_file tool."""

    path: str = Field(description="Path of the file to write, relative to the project")
    content: str = Field(description="Full content of the file")

    model_config = {"extra": "forbid"}


class EditFileArgs(BaseModel):
    """Arguments for the edit_file tool (str_replace)."""

    path: str = Field(description="Path of the file to edit, relative to the project")
    old_str: str = Field(
        min_length=1,
        description="Exact text to replace. Must appear exactly once in the file.",
    )
    new_str: str = Field(description="Replacement text (may be empty to delete)")

    model_config = {"extra": "forbid"}


class BashExecArgs(BaseModel):
    """Arguments for the bash_exec tool."""

    command: str = Field(
        min_length=1,
        description="Shell command to run in the project directory",
        examples=["git status", "pytest tests/ -q"],
    )
    timeout: int = Field(
        default=120,
        ge=1,
        le=600,
        description="Timeout in seconds",
    )

    model_config = {"extra": "forbid"}
