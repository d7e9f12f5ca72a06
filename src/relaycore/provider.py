import json
import logging
import os
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

import httpx

from relaycore.errors import (
    ConfigurationError,
    InvalidCredentialError,
    NetworkError,
    ProviderError,
    RateLimitedError,
)
from relaycore.events import (
    TOOL_CALLS,
    Content,
    FinishReason,
    Reasoning,
    StreamEvent,
    ToolCallFragment,
    Usage,
)
from relaycore.message import ChatTurn, TurnRole
from relaycore.sse import ServerSentEvent, iter_sse
from relaycore.tools import ToolDefinition

logger = logging.getLogger(__name__)

# Error bodies are read up to this many characters.
ERROR_BODY_LIMIT = 500

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 8192
OPENROUTER_REFERER = "https://relay.app"

_ANTHROPIC_STOP_REASONS = {
    "tool_use": TOOL_CALLS,
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class ProviderId(Enum):
    OPENROUTER = "openrouter"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @property
    def display_name(self) -> str:
        return {
            ProviderId.OPENROUTER: "OpenRouter",
            ProviderId.OPENAI: "OpenAI",
            ProviderId.ANTHROPIC: "Anthropic",
        }[self]

    @property
    def default_base_url(self) -> str:
        return {
            ProviderId.OPENROUTER: "https://openrouter.ai/api/v1",
            ProviderId.OPENAI: "https://api.openai.com/v1",
            ProviderId.ANTHROPIC: "https://api.anthropic.com/v1",
        }[self]

    @property
    def api_key_env(self) -> str:
        return f"{self.name}_API_KEY"

    @property
    def base_url_env(self) -> str:
        return f"RELAYCORE_{self.name}_BASE_URL"


def _parse_object(data: str) -> dict | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _load_json(data: str) -> dict | None:
    payload = _parse_object(data)
    if payload is None:
        logger.debug(f"Skipping malformed stream line: {data[:200]!r}")
    return payload


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def extract_error_message(body: str) -> str | None:
    """Best-effort ``error.message`` from a provider's JSON error body."""
    payload = _parse_object(body) if body else None
    if payload is None:
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return _str_or_none(error.get("message"))
    return _str_or_none(error)


async def _read_error_body(response: httpx.Response) -> str:
    chunks: list[str] = []
    size = 0
    async for text in response.aiter_text():
        chunks.append(text)
        size += len(text)
        if size > ERROR_BODY_LIMIT:
            break
    return "".join(chunks)[:ERROR_BODY_LIMIT]


async def _status_error(response: httpx.Response) -> ProviderError:
    status = response.status_code
    if status == 401:
        return InvalidCredentialError()
    if status == 429:
        return RateLimitedError()
    body = await _read_error_body(response)
    return NetworkError(extract_error_message(body) or f"HTTP {status}")


class StreamDecoder:
    """Turns one provider's server-sent events into stream events.

    A decoder holds the per-stream state a protocol needs and sets
    ``done`` once the provider's end-of-stream signal arrives.
    """

    def __init__(self) -> None:
        self.done = False

    def decode(self, sse: ServerSentEvent) -> list[StreamEvent]:
        raise NotImplementedError


class ModelProvider:
    """Base class for one wire-protocol family.

    ``stream_complete`` returns a lazy, single-pass async generator.  It
    ends on the provider's end-of-stream signal or raises a
    :class:`~relaycore.errors.ProviderError`.  Closing the generator
    early (``aclose()``) closes the HTTP response and aborts the
    transfer.
    """

    def __init__(
        self,
        base_url: str,
        *,
        name: str = "",
        extra_headers: dict[str, str] | None = None,
        timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name or type(self).__name__
        self.extra_headers = dict(extra_headers or {})
        self.timeout = timeout
        self._transport = transport

    def build_request(
        self,
        model: str,
        turns: list[ChatTurn],
        credential: str,
        tools: list[ToolDefinition] | None = None,
        force_tool_name: str | None = None,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(path, headers, body)`` for a streaming request."""
        raise NotImplementedError

    def new_decoder(self) -> StreamDecoder:
        raise NotImplementedError

    async def stream_complete(
        self,
        model: str,
        turns: list[ChatTurn],
        credential: str,
        tools: list[ToolDefinition] | None = None,
        force_tool_name: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        path, headers, body = self.build_request(
            model, turns, credential, tools, force_tool_name,
        )
        headers.update(self.extra_headers)
        url = f"{self.base_url}/{path}"
        decoder = self.new_decoder()
        logger.debug(f"POST {url} model={model} turns={len(turns)}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport,
            ) as client:
                async with client.stream(
                    "POST", url, headers=headers, json=body,
                ) as response:
                    if response.status_code != 200:
                        raise await _status_error(response)
                    async for sse in iter_sse(response.aiter_lines()):
                        for event in decoder.decode(sse):
                            yield event
                        if decoder.done:
                            break
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc) or type(exc).__name__) from exc


# ----------------------------------------------------------------------
# OpenAI-style chat completions
# ----------------------------------------------------------------------

def _openai_message(turn: ChatTurn) -> dict[str, Any]:
    if turn.tool_calls:
        return {
            "role": turn.role.value,
            "content": turn.content or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in turn.tool_calls
            ],
        }
    if turn.tool_call_id is not None:
        return {
            "role": "tool",
            "tool_call_id": turn.tool_call_id,
            "content": turn.content,
        }
    if turn.image_base64:
        return {
            "role": turn.role.value,
            "content": [
                {"type": "text", "text": turn.content},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{turn.image_base64}"},
                },
            ],
        }
    return {"role": turn.role.value, "content": turn.content}


class OpenAIStreamDecoder(StreamDecoder):
    """Decodes ``data:`` lines of an OpenAI-style chat completion stream."""

    def decode(self, sse: ServerSentEvent) -> list[StreamEvent]:
        data = sse.data.strip()
        if data == "[DONE]":
            self.done = True
            return []
        payload = _load_json(data)
        if payload is None:
            return []

        events: list[StreamEvent] = []
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta = choice.get("delta")
            if isinstance(delta, dict):
                for tc in delta.get("tool_calls") or []:
                    if not isinstance(tc, dict):
                        continue
                    fn = tc.get("function")
                    if not isinstance(fn, dict):
                        fn = {}
                    events.append(ToolCallFragment(
                        index=_int_or_none(tc.get("index")) or 0,
                        call_id=_str_or_none(tc.get("id")),
                        name=_str_or_none(fn.get("name")),
                        arguments_delta=_str_or_none(fn.get("arguments")),
                    ))
                reasoning = _str_or_none(delta.get("reasoning"))
                if reasoning is None:
                    reasoning = _str_or_none(delta.get("reasoning_content"))
                if reasoning:
                    events.append(Reasoning(text=reasoning))
                content = _str_or_none(delta.get("content"))
                if content:
                    events.append(Content(text=content))
            finish_reason = _str_or_none(choice.get("finish_reason"))
            if finish_reason:
                events.append(FinishReason(kind=finish_reason))

        # With stream_options.include_usage the last chunk has usage and an
        # empty choices list.
        usage = payload.get("usage")
        if isinstance(usage, dict):
            prompt = _int_or_none(usage.get("prompt_tokens"))
            completion = _int_or_none(usage.get("completion_tokens"))
            if prompt is not None and completion is not None:
                events.append(Usage(prompt_tokens=prompt, completion_tokens=completion))
        return events


class OpenAIStyleProvider(ModelProvider):
    """OpenAI, OpenRouter and any other ``/chat/completions`` endpoint."""

    def build_request(self, model, turns, credential, tools=None, force_tool_name=None):
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential}",
        }
        body: dict[str, Any] = {
            "model": model,
            "messages": [_openai_message(t) for t in turns],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            if force_tool_name:
                body["tool_choice"] = {
                    "type": "function",
                    "function": {"name": force_tool_name},
                }
        return "chat/completions", headers, body

    def new_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder()


# ----------------------------------------------------------------------
# Anthropic messages
# ----------------------------------------------------------------------

def _decode_arguments(arguments: str) -> dict:
    try:
        value = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _as_blocks(content: str | list[dict]) -> list[dict]:
    if isinstance(content, list):
        return content
    return [{"type": "text", "text": content}] if content else []


def _anthropic_messages(turns: list[ChatTurn]) -> tuple[str | None, list[dict]]:
    """Split out the system prompt and map turns onto alternating messages."""
    system_parts: list[str] = []
    messages: list[dict[str, Any]] = []
    for turn in turns:
        content: str | list[dict]
        if turn.role is TurnRole.SYSTEM:
            system_parts.append(turn.content)
            continue
        if turn.role is TurnRole.TOOL:
            role = "user"
            content = [{
                "type": "tool_result",
                "tool_use_id": turn.tool_call_id or "",
                "content": turn.content,
            }]
        elif turn.tool_calls:
            role = "assistant"
            content = _as_blocks(turn.content) + [
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": _decode_arguments(call.arguments),
                }
                for call in turn.tool_calls
            ]
        elif turn.image_base64:
            role = turn.role.value
            content = [
                {"type": "text", "text": turn.content},
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/jpeg",
                        "data": turn.image_base64,
                    },
                },
            ]
        else:
            role = turn.role.value
            content = turn.content

        if messages and messages[-1]["role"] == role:
            previous = messages[-1]
            previous["content"] = _as_blocks(previous["content"]) + _as_blocks(content)
        else:
            messages.append({"role": role, "content": content})

    system = "\n\n".join(system_parts) if system_parts else None
    return system, messages


def _anthropic_error(error: Any) -> ProviderError:
    if not isinstance(error, dict):
        return NetworkError("Stream error")
    kind = error.get("type")
    message = _str_or_none(error.get("message"))
    if kind in ("rate_limit_error", "overloaded_error"):
        return RateLimitedError()
    if kind == "authentication_error":
        return InvalidCredentialError()
    return NetworkError(message or "Stream error")


class AnthropicStreamDecoder(StreamDecoder):
    """Decodes typed events of an Anthropic messages stream."""

    def __init__(self) -> None:
        super().__init__()
        self.prompt_tokens = 0

    def decode(self, sse: ServerSentEvent) -> list[StreamEvent]:
        payload = _load_json(sse.data)
        if payload is None:
            return []
        kind = payload.get("type") or sse.event

        if kind == "message_start":
            message = payload.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                tokens = _int_or_none(usage.get("input_tokens"))
                if tokens is not None:
                    self.prompt_tokens = tokens
            return []

        if kind == "content_block_start":
            block = payload.get("content_block")
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                return []
            initial = block.get("input")
            return [ToolCallFragment(
                index=_int_or_none(payload.get("index")) or 0,
                call_id=_str_or_none(block.get("id")),
                name=_str_or_none(block.get("name")),
                arguments_delta=json.dumps(initial) if isinstance(initial, dict) and initial else None,
            )]

        if kind == "content_block_delta":
            delta = payload.get("delta")
            if not isinstance(delta, dict):
                return []
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = _str_or_none(delta.get("text"))
                return [Content(text=text)] if text else []
            if delta_type == "thinking_delta":
                thinking = _str_or_none(delta.get("thinking"))
                return [Reasoning(text=thinking)] if thinking else []
            if delta_type == "input_json_delta":
                partial = _str_or_none(delta.get("partial_json"))
                if not partial:
                    return []
                return [ToolCallFragment(
                    index=_int_or_none(payload.get("index")) or 0,
                    arguments_delta=partial,
                )]
            return []

        if kind == "message_delta":
            events: list[StreamEvent] = []
            delta = payload.get("delta")
            if isinstance(delta, dict):
                stop_reason = _str_or_none(delta.get("stop_reason"))
                if stop_reason:
                    events.append(FinishReason(
                        kind=_ANTHROPIC_STOP_REASONS.get(stop_reason, stop_reason),
                    ))
            usage = payload.get("usage")
            if isinstance(usage, dict):
                output_tokens = _int_or_none(usage.get("output_tokens"))
                if output_tokens is not None:
                    events.append(Usage(
                        prompt_tokens=self.prompt_tokens,
                        completion_tokens=output_tokens,
                    ))
            return events

        if kind == "message_stop":
            self.done = True
            return []

        if kind == "error":
            raise _anthropic_error(payload.get("error"))

        return []


class AnthropicProvider(ModelProvider):
    """Anthropic ``/messages`` endpoint."""

    def build_request(self, model, turns, credential, tools=None, force_tool_name=None):
        headers = {
            "Content-Type": "application/json",
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        system, messages = _anthropic_messages(turns)
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "stream": True,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in tools
            ]
            if force_tool_name:
                body["tool_choice"] = {"type": "tool", "name": force_tool_name}
        return "messages", headers, body

    def new_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder()


# ----------------------------------------------------------------------
# Lookup
# ----------------------------------------------------------------------

def _provider_id(provider_id: "ProviderId | str") -> ProviderId:
    if isinstance(provider_id, ProviderId):
        return provider_id
    try:
        return ProviderId(provider_id)
    except ValueError:
        raise ConfigurationError(f"Unknown provider: {provider_id}") from None


def get_provider(
    provider_id: ProviderId | str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ModelProvider:
    """Return the adapter for ``provider_id``.

    This is the only place provider ids are mapped to wire protocols.
    The base URL can be overridden with ``RELAYCORE_<PROVIDER>_BASE_URL``.
    """
    pid = _provider_id(provider_id)
    base_url = os.getenv(pid.base_url_env) or pid.default_base_url
    if pid is ProviderId.ANTHROPIC:
        return AnthropicProvider(base_url, name=pid.value, transport=transport)
    extra_headers = {}
    if pid is ProviderId.OPENROUTER:
        extra_headers["HTTP-Referer"] = OPENROUTER_REFERER
    return OpenAIStyleProvider(
        base_url, name=pid.value, extra_headers=extra_headers, transport=transport,
    )


def env_credential(provider_id: ProviderId | str) -> str | None:
    """Read a provider's API key from ``<PROVIDER>_API_KEY``."""
    try:
        pid = _provider_id(provider_id)
    except ConfigurationError:
        return None
    return os.getenv(pid.api_key_env) or None


def display_name(provider_id: ProviderId | str) -> str:
    try:
        return _provider_id(provider_id).display_name
    except ConfigurationError:
        return str(provider_id)
