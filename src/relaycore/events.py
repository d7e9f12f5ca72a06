"""Provider-agnostic events yielded by every provider stream."""

from __future__ import annotations

from dataclasses import dataclass

TOOL_CALLS = "tool_calls"


@dataclass
class StreamEvent:
    """Base for all stream events."""


@dataclass
class Content(StreamEvent):
    """Incremental answer text."""

    text: str = ""


@dataclass
class Reasoning(StreamEvent):
    """Incremental reasoning (thinking) text."""

    text: str = ""


@dataclass
class ToolCallFragment(StreamEvent):
    """A piece of a tool call, keyed by its position in the response.

    Later fragments for the same ``index`` usually carry only
    ``arguments_delta``.  A provider that delivers a call whole sends a
    single fragment with ``call_id``, ``name`` and the full arguments.
    """

    index: int = 0
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class FinishReason(StreamEvent):
    """Why the provider stopped generating.

    ``kind`` is normalized across providers; ``"tool_calls"`` always
    means the model is waiting on tool results.
    """

    kind: str = ""

    @property
    def is_tool_use(self) -> bool:
        return self.kind == TOOL_CALLS


@dataclass
class Usage(StreamEvent):
    """Token accounting for one round."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
