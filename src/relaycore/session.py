"""Conversation container and pure transforms over turn history.

Retry, regenerate and edit are expressed as history transforms
followed by a fresh generation; none of them is a mode of the loop.
Every function here returns a new list and leaves its input untouched.
"""

from collections.abc import Iterable

from pydantic import BaseModel, Field

from relaycore.message import ChatTurn, TurnRole

HISTORY_LIMIT = 20


class Conversation(BaseModel):
    conversation_id: str
    provider_id: str
    model: str
    system_prompt: str | None = None
    turns: list[ChatTurn] = Field(default_factory=list)


def _is_empty_reply(turn: ChatTurn) -> bool:
    return turn.role is TurnRole.ASSISTANT and not turn.content and not turn.tool_calls


def request_history(
    turns: list[ChatTurn],
    system_prompt: str | None = None,
    limit: int = HISTORY_LIMIT,
    exclude: Iterable[str] = (),
) -> list[ChatTurn]:
    """Build the turns sent to a provider.

    Error turns, empty assistant turns (a generation cancelled before
    its first token) and the turns whose ids are in ``exclude`` are dropped,
    only the last ``limit`` turns are kept, and a non-empty
    ``system_prompt`` becomes a leading system turn.
    """
    excluded = set(exclude)
    kept = [
        t for t in turns
        if not t.is_error
        and t.turn_id not in excluded
        and not _is_empty_reply(t)
    ]
    if limit > 0:
        kept = kept[-limit:]
    if system_prompt:
        return [ChatTurn.system(system_prompt), *kept]
    return kept


def retry_last(turns: list[ChatTurn]) -> list[ChatTurn]:
    """Drop the trailing error turn, if there is one."""
    if turns and turns[-1].is_error:
        return turns[:-1]
    return list(turns)


def regenerate(turns: list[ChatTurn], turn_id: str) -> list[ChatTurn]:
    """Drop the assistant turn ``turn_id`` so it can be generated again."""
    return [
        t for t in turns
        if not (t.turn_id == turn_id and t.role is TurnRole.ASSISTANT)
    ]


def delete_exchange(turns: list[ChatTurn], turn_id: str) -> list[ChatTurn]:
    """Drop the user turn ``turn_id`` and the assistant reply right after it."""
    for index, turn in enumerate(turns):
        if turn.turn_id == turn_id and turn.role is TurnRole.USER:
            end = index + 1
            if end < len(turns) and turns[end].role is TurnRole.ASSISTANT:
                end += 1
            return turns[:index] + turns[end:]
    return list(turns)
