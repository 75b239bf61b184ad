"""
Abstract base for every tool in the system.

Defines the common interface tools implement, including argument
validation through a declared pydantic schema and the definition
handed to the model.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


class ToolResult(BaseModel):
    """Result of a tool call as folded back into the conversation.

    Attributes:
        success: True if the tool ran correctly
        output: Tool output, always a string (structured data serialized)
        error: Error message if success=False, None otherwise
    """

    success: bool
    output: str
    error: str | None = None

    model_config = {"extra": "forbid"}


class ToolError(Exception):
    """Failure reported by a tool. The message reaches the model verbatim."""

    pass


class BaseTool(ABC):
    """Abstract base class for all tools.

    Each tool must:
    1. Define name, description and args_model
    2. Implement the async execute()
    3. Optionally mark sensitive=True

    Tools return structured data on success and raise ToolError (or any
    exception) on failure. The registry turns both into a uniform result.
    """

    name: str
    description: str
    sensitive: bool = False
    args_model: type[BaseModel]

    @abstractmethod
    async def execute(self, args: BaseModel, signal: asyncio.Event | None = None) -> Any:
        """Execute the tool with validated arguments.

        Args:
            args: Instance of args_model
            signal: Shared cancellation event of the turn

        Returns:
            JSON-serializable data describing the outcome
        """

    def get_definition(self) -> dict[str, Any]:
        """Definition handed to the model: name, description, input_schema."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }

    def validate_args(self, args: dict[str, Any]) -> BaseModel:
        """Validate arguments with the pydantic model.

        Raises:
            pydantic.ValidationError: If the arguments are not valid
        """
        return self.args_model.model_validate(args)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', sensitive={self.sensitive})>"
