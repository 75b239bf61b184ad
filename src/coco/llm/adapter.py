"""
LiteLLM-backed ModelProvider.

Translates the block-based conversation of the turn loop into the
OpenAI-style messages LiteLLM expects, streams the response and turns
it back into StreamEvents.

Retries (from LLMConfig.retries) only cover opening the stream and only
transient errors: RateLimitError, ServiceUnavailableError,
APIConnectionError and Timeout. Once the first chunk has arrived, a
failure propagates to the caller.
"""

import json
import os
from typing import Any, AsyncIterator

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.schema import LLMConfig
from .provider import StreamEvent

logger = structlog.get_logger()

_RETRYABLE_ERRORS = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.APIConnectionError,
    litellm.Timeout,
)

_STOP_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


class LiteLLMProvider:
    """ModelProvider over any model LiteLLM supports."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.max_tokens = config.max_tokens
        self.log = logger.bind(component="llm_provider", model=config.model)
        self._configure_litellm()

    def _configure_litellm(self) -> None:
        if self.config.api_base:
            litellm.api_base = self.config.api_base
            self.log.debug("llm.api_base_set", api_base=self.config.api_base)

        if not os.environ.get(self.config.api_key_env):
            self.log.warning(
                "llm.no_api_key",
                env_var=self.config.api_key_env,
                message=f"Environment variable {self.config.api_key_env} not found",
            )

        litellm.suppress_debug_info = True

    def _on_retry_sleep(self, retry_state: RetryCallState) -> None:
        next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "llm.retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(next_wait, 1),
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    async def _open_stream(self, kwargs: dict[str, Any]) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.config.retries + 1),
            wait=wait_exponential(multiplier=1, min=2, max=60),
            before_sleep=self._on_retry_sleep,
            reraise=True,
        ):
            with attempt:
                return await litellm.acompletion(**kwargs)

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": to_litellm_messages(messages),
            "timeout": self.config.timeout,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": True,
        }
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        api_key = os.environ.get(self.config.api_key_env)
        if api_key:
            kwargs["api_key"] = api_key
        if tools:
            kwargs["tools"] = to_litellm_tools(tools)

        self.log.debug(
            "llm.stream.start",
            messages_count=len(messages),
            tools_count=len(tools),
        )

        response = await self._open_stream(kwargs)

        collected: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None

        async for chunk in response:
            choice = chunk.choices[0] if chunk.choices else None
            if not choice:
                continue
            delta = choice.delta

            if getattr(delta, "content", None):
                yield StreamEvent.text_delta(delta.content)

            for tc_delta in getattr(delta, "tool_calls", None) or []:
                idx = tc_delta.index
                function = getattr(tc_delta, "function", None)
                if idx not in collected:
                    collected[idx] = {
                        "id": tc_delta.id or "",
                        "name": (function.name if function else "") or "",
                        "arguments": "",
                    }
                    yield StreamEvent.tool_start(collected[idx]["id"] or None, collected[idx]["name"] or None)
                if tc_delta.id:
                    collected[idx]["id"] = tc_delta.id
                if function is not None:
                    if function.name:
                        collected[idx]["name"] = function.name
                    if function.arguments:
                        collected[idx]["arguments"] += function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for idx in sorted(collected):
            tc = collected[idx]
            yield StreamEvent.tool_end(tc["id"] or None, tc["name"] or None, self._parse_arguments(tc["arguments"]))

        stop_reason = _STOP_REASONS.get(finish_reason or "", finish_reason)
        self.log.debug("llm.stream.complete", stop_reason=stop_reason, tool_calls=len(collected))
        yield StreamEvent.done(stop_reason)

    def count_tokens(self, text: str) -> int:
        """Token count of ``text`` for the configured model (~4 chars/token fallback)."""
        try:
            return litellm.token_counter(model=self.config.model, text=text)
        except Exception:
            return (len(text) + 3) // 4

    def _parse_arguments(self, arguments: str) -> dict[str, Any]:
        if not arguments:
            return {}
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            self.log.warning("llm.arguments_parse_error", arguments=arguments[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def __repr__(self) -> str:
        return f"<LiteLLMProvider(model='{self.config.model}')>"


def to_litellm_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Tool definitions ({name, description, input_schema}) in OpenAI function format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


def to_litellm_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten block content into OpenAI-style messages.

    tool_use blocks become ``tool_calls`` of the assistant message and
    every tool_result block becomes its own ``tool`` message.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, str):
            result.append({"role": msg["role"], "content": content})
            continue

        texts = [b.get("text", "") for b in content if b.get("type") == "text"]
        tool_uses = [b for b in content if b.get("type") == "tool_use"]
        tool_results = [b for b in content if b.get("type") == "tool_result"]

        for block in tool_results:
            result.append({
                "role": "tool",
                "tool_call_id": block["tool_use_id"],
                "content": str(block.get("content", "")),
            })

        if tool_uses:
            result.append({
                "role": "assistant",
                "content": "".join(texts) or None,
                "tool_calls": [
                    {
                        "id": b["id"],
                        "type": "function",
                        "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                    }
                    for b in tool_uses
                ],
            })
        elif texts:
            result.append({"role": msg["role"], "content": "".join(texts)})
    return result
