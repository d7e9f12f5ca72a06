import uuid
from enum import Enum

from pydantic import BaseModel, Field, field_serializer

from relaycore.streaming import ToolCall


class TurnRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ChatTurn(BaseModel):
    """One message-like unit of a conversation.

    Only ``role``, ``content``, ``image_base64``, ``tool_call_id`` and
    ``tool_calls`` are sent to providers.  The remaining fields describe
    how an assistant turn was produced.
    """

    role: TurnRole
    content: str = ""
    image_base64: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reasoning: str | None = None
    is_error: bool = False
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    latency_ms: int | None = None
    duration_ms: int | None = None

    @field_serializer('role')
    def serialize_role(self, role: TurnRole, _info) -> str:
        return role.value

    @classmethod
    def system(cls, content: str) -> "ChatTurn":
        return cls(role=TurnRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, image_base64: str | None = None) -> "ChatTurn":
        return cls(role=TurnRole.USER, content=content, image_base64=image_base64)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: list[ToolCall] | None = None
    ) -> "ChatTurn":
        return cls(role=TurnRole.ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "ChatTurn":
        return cls(role=TurnRole.TOOL, content=content, tool_call_id=tool_call_id)
