"""Tests for the Anthropic messages adapter."""

from contextlib import aclosing

import pytest

from relaycore.errors import NetworkError, RateLimitedError
from relaycore.events import Content, FinishReason, Reasoning, ToolCallFragment, Usage
from relaycore.message import ChatTurn
from relaycore.provider import ANTHROPIC_MAX_TOKENS, ANTHROPIC_VERSION, AnthropicProvider
from relaycore.streaming import ToolCall, ToolCallAccumulator
from relaycore.tools import ToolDefinition

from tests.conftest import (
    RecordingTransport,
    TrackingStream,
    anthropic_body,
    collect,
    streaming_transport,
)


def _message_start(input_tokens=10):
    return {
        "type": "message_start",
        "message": {"id": "msg_1", "usage": {"input_tokens": input_tokens, "output_tokens": 1}},
    }


def _text_delta(text, index=0):
    return {"type": "content_block_delta", "index": index,
            "delta": {"type": "text_delta", "text": text}}


def _message_delta(stop_reason, output_tokens=5):
    return {"type": "message_delta", "delta": {"stop_reason": stop_reason},
            "usage": {"output_tokens": output_tokens}}


MESSAGE_STOP = {"type": "message_stop"}


async def _stream(transport, turns=None, **kwargs):
    provider = AnthropicProvider(
        "https://api.anthropic.test/v1", transport=transport.transport,
    )
    return await collect(provider.stream_complete(
        "claude-test", turns or [ChatTurn.user("hi")], "ak-test", **kwargs,
    ))


class TestDecoding:
    @pytest.mark.asyncio
    async def test_text_usage_and_stop_reason(self):
        transport = RecordingTransport(body=anthropic_body(
            _message_start(input_tokens=42),
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "text", "text": ""}},
            _text_delta("Hel"),
            _text_delta("lo"),
            {"type": "content_block_stop", "index": 0},
            _message_delta("end_turn", output_tokens=7),
            MESSAGE_STOP,
        ))

        events = await _stream(transport)

        assert events == [
            Content(text="Hel"),
            Content(text="lo"),
            FinishReason(kind="stop"),
            Usage(prompt_tokens=42, completion_tokens=7),
        ]

    @pytest.mark.asyncio
    async def test_thinking_is_reasoning(self):
        transport = RecordingTransport(body=anthropic_body(
            _message_start(),
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "thinking_delta", "thinking": "hmm"}},
            MESSAGE_STOP,
        ))

        assert await _stream(transport) == [Reasoning(text="hmm")]

    @pytest.mark.asyncio
    async def test_tool_use_blocks_accumulate_into_calls(self):
        transport = RecordingTransport(body=anthropic_body(
            _message_start(),
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "web_search", "input": {}}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '{"query":'}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '"cats"}'}},
            _message_delta("tool_use"),
            MESSAGE_STOP,
        ))

        events = await _stream(transport)

        assert events[0] == ToolCallFragment(index=1, call_id="toolu_1", name="web_search")
        assert FinishReason(kind="tool_calls") in events
        accumulator = ToolCallAccumulator()
        for event in events:
            if isinstance(event, ToolCallFragment):
                accumulator.feed(event)
        assert accumulator.finalize() == [
            ToolCall(id="toolu_1", name="web_search", arguments='{"query":"cats"}'),
        ]

    @pytest.mark.asyncio
    async def test_max_tokens_maps_to_length(self):
        transport = RecordingTransport(body=anthropic_body(
            _message_start(), _message_delta("max_tokens"), MESSAGE_STOP,
        ))

        events = await _stream(transport)

        assert events[0] == FinishReason(kind="length")

    @pytest.mark.asyncio
    async def test_events_after_message_stop_are_ignored(self):
        transport = RecordingTransport(body=anthropic_body(
            _text_delta("a"), MESSAGE_STOP, _text_delta("b"),
        ))

        assert await _stream(transport) == [Content(text="a")]

    @pytest.mark.asyncio
    async def test_ping_is_ignored(self):
        transport = RecordingTransport(body=anthropic_body(
            {"type": "ping"}, _text_delta("a"), MESSAGE_STOP,
        ))

        assert await _stream(transport) == [Content(text="a")]

    @pytest.mark.asyncio
    async def test_malformed_data_is_skipped(self):
        body = (
            anthropic_body(_text_delta("a"))
            + "event: content_block_delta\ndata: {\"type\": \"content_block_delta\", \"index\"\n\n"
            + "event: content_block_delta\ndata: [\"not\", \"an\", \"object\"]\n\n"
            + anthropic_body(_text_delta("b"), MESSAGE_STOP)
        )

        assert await _stream(RecordingTransport(body=body)) == [Content(text="a"), Content(text="b")]

    @pytest.mark.asyncio
    async def test_closing_the_stream_closes_the_response(self):
        body = TrackingStream(
            [anthropic_body(_message_start())]
            + [anthropic_body(_text_delta(f"part {i} ")) for i in range(5)]
            + [anthropic_body(MESSAGE_STOP)]
        )
        provider = AnthropicProvider(
            "https://api.anthropic.test/v1", transport=streaming_transport(body),
        )

        stream = provider.stream_complete("claude-test", [ChatTurn.user("hi")], "ak-test")
        async with aclosing(stream):
            async for event in stream:
                break

        assert event == Content(text="part 0 ")
        assert body.closed
        assert body.served < len(body.chunks)

    @pytest.mark.asyncio
    async def test_error_event_raises(self):
        transport = RecordingTransport(body=anthropic_body(
            _text_delta("partial"),
            {"type": "error", "error": {"type": "api_error", "message": "Internal error"}},
        ))

        with pytest.raises(NetworkError) as info:
            await _stream(transport)
        assert info.value.detail == "Internal error"

    @pytest.mark.asyncio
    async def test_overloaded_error_event_is_rate_limited(self):
        transport = RecordingTransport(body=anthropic_body(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        ))

        with pytest.raises(RateLimitedError):
            await _stream(transport)


class TestRequest:
    @pytest.mark.asyncio
    async def test_headers_and_body(self):
        transport = RecordingTransport(body=anthropic_body(MESSAGE_STOP))
        turns = [
            ChatTurn.system("Be brief."),
            ChatTurn.system("Use metric units."),
            ChatTurn.user("hi"),
        ]
        await _stream(transport, turns=turns)

        request = transport.requests[0]
        body = transport.json_body()
        assert str(request.url) == "https://api.anthropic.test/v1/messages"
        assert request.headers["x-api-key"] == "ak-test"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
        assert "authorization" not in request.headers
        assert body["system"] == "Be brief.\n\nUse metric units."
        assert body["max_tokens"] == ANTHROPIC_MAX_TOKENS
        assert body["stream"] is True
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_tools_and_forced_choice(self):
        transport = RecordingTransport(body=anthropic_body(MESSAGE_STOP))
        definition = ToolDefinition(
            name="web_search", description="Search.",
            parameters={"type": "object", "properties": {"query": {"type": "string"}}},
        )
        await _stream(transport, tools=[definition], force_tool_name="web_search")

        body = transport.json_body()
        assert body["tools"] == [{
            "name": "web_search",
            "description": "Search.",
            "input_schema": definition.parameters,
        }]
        assert body["tool_choice"] == {"type": "tool", "name": "web_search"}

    @pytest.mark.asyncio
    async def test_tool_round_mapping(self):
        transport = RecordingTransport(body=anthropic_body(MESSAGE_STOP))
        turns = [
            ChatTurn.user("find cats"),
            ChatTurn.assistant("Looking.", tool_calls=[
                ToolCall(id="t1", name="web_search", arguments='{"query":"cats"}'),
                ToolCall(id="t2", name="web_search", arguments='{"query":"dogs"}'),
            ]),
            ChatTurn.tool_result("t1", "cat results"),
            ChatTurn.tool_result("t2", "dog results"),
        ]
        await _stream(transport, turns=turns)

        messages = transport.json_body()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"] == [
            {"type": "text", "text": "Looking."},
            {"type": "tool_use", "id": "t1", "name": "web_search", "input": {"query": "cats"}},
            {"type": "tool_use", "id": "t2", "name": "web_search", "input": {"query": "dogs"}},
        ]
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "cat results"},
            {"type": "tool_result", "tool_use_id": "t2", "content": "dog results"},
        ]

    @pytest.mark.asyncio
    async def test_image_block(self):
        transport = RecordingTransport(body=anthropic_body(MESSAGE_STOP))
        await _stream(transport, turns=[ChatTurn.user("what is this", image_base64="QUJD")])

        content = transport.json_body()["messages"][0]["content"]
        assert content[1] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"},
        }
