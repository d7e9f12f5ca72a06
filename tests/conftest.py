import asyncio
import json

import httpx
import pytest

from relaycore.generation import Generation, GenerationRequest
from relaycore.message import ChatTurn
from relaycore.provider import ModelProvider
from relaycore.runner import Runner


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class FakeProvider(ModelProvider):
    """Provider that replays one scripted event list per round.

    A script item may be a StreamEvent (yielded), an exception (raised)
    or a zero-argument callable (called, then skipped), which lets a
    test act at an exact point of the stream.  No network calls.
    """

    def __init__(self, rounds=None):
        super().__init__("http://fake.invalid", name="fake")
        self.rounds = list(rounds or [])
        self.calls: list[dict] = []
        self.aborted = 0

    async def stream_complete(
        self, model, turns, credential, tools=None, force_tool_name=None,
    ):
        self.calls.append({
            "model": model,
            "turns": list(turns),
            "credential": credential,
            "tools": tools,
            "force_tool_name": force_tool_name,
        })
        script = self.rounds.pop(0)
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if callable(item):
                    item()
                    continue
                yield item
                await asyncio.sleep(0)
        except GeneratorExit:
            self.aborted += 1
            raise


class StallingProvider(ModelProvider):
    """Provider that yields its events and then goes silent.

    ``stalled`` is set once the stream is waiting; ``closed`` once the
    stream was torn down, whatever the reason.
    """

    def __init__(self, events=None):
        super().__init__("http://stall.invalid", name="stall")
        self.events = list(events or [])
        self.calls = 0
        self.stalled = asyncio.Event()
        self.closed = False

    async def stream_complete(
        self, model, turns, credential, tools=None, force_tool_name=None,
    ):
        self.calls += 1
        try:
            for event in self.events:
                yield event
            self.stalled.set()
            await asyncio.sleep(3600)
        finally:
            self.closed = True


# ---------------------------------------------------------------------------
# Wire-format builders
# ---------------------------------------------------------------------------

def openai_chunk(content=None, reasoning=None, tool_calls=None,
                 finish_reason=None, usage=None, choices=True) -> dict:
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    chunk = {"id": "chatcmpl-1", "object": "chat.completion.chunk"}
    chunk["choices"] = (
        [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
        if choices else []
    )
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def openai_body(*chunks, done=True) -> str:
    lines = [f"data: {json.dumps(c) if isinstance(c, dict) else c}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def anthropic_body(*events) -> str:
    return "".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events
    )


class RecordingTransport:
    """httpx.MockTransport wrapper that keeps every request it served."""

    def __init__(self, status=200, body="", headers=None):
        self.requests: list[httpx.Request] = []
        self.status = status
        self.body = body
        self.headers = headers or {"content-type": "text/event-stream"}
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status, content=self.body.encode(), headers=self.headers,
        )

    def json_body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


class TrackingStream(httpx.AsyncByteStream):
    """Response body served chunk by chunk that records its teardown."""

    def __init__(self, chunks):
        self.chunks = [c.encode() if isinstance(c, str) else c for c in chunks]
        self.served = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.served += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def streaming_transport(stream: TrackingStream) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, stream=stream, headers={"content-type": "text/event-stream"},
        )
    return httpx.MockTransport(handler)


async def collect(stream) -> list:
    return [event async for event in stream]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def make_runner(fake_provider):
    """Factory fixture for a Runner wired to the fake provider."""
    def _make(provider=None, credential="test-key", **kwargs):
        return Runner(
            credentials=lambda _pid: credential,
            providers=lambda _pid: provider or fake_provider,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_generation():
    def _make(tools=None, force_tool_name=None, turns=None, provider_id="openai"):
        request = GenerationRequest(
            provider_id=provider_id,
            model="test-model",
            turns=turns if turns is not None else [ChatTurn.user("hi")],
            tools=tools,
            force_tool_name=force_tool_name,
            conversation_id="c1",
        )
        return Generation(request)
    return _make
