"""
Model access for coco.

The core depends only on the ModelProvider protocol; LiteLLMProvider is
the production implementation.
"""

from .adapter import LiteLLMProvider, to_litellm_messages, to_litellm_tools
from .provider import ModelProvider, StreamEvent, ToolDefinition

__all__ = [
    "LiteLLMProvider",
    "ModelProvider",
    "StreamEvent",
    "ToolDefinition",
    "to_litellm_messages",
    "to_litellm_tools",
]
