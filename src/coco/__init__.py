"""
coco - agentic coding assistant core.

Streams model output, dispatches tool calls through confirmation, hooks
and a bounded parallel executor, and coordinates sub-agents over
dependent tasks.
"""

__version__ = "0.4.0"
