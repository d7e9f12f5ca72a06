"""Tool-call reassembly for streaming responses.

Providers yield :class:`~relaycore.events.ToolCallFragment` events.  The
:class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple events.
"""

from __future__ import annotations

from dataclasses import dataclass

from relaycore.events import ToolCallFragment


@dataclass
class ToolCall:
    """A resolved tool call ready for the transcript."""

    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    The first non-null ``call_id`` and ``name`` seen for an index win;
    argument fragments are appended in arrival order.
    """

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}
        self._has_id: set[int] = set()
        self._has_name: set[int] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, fragment: ToolCallFragment) -> None:
        index = fragment.index
        if index not in self._pending:
            self._pending[index] = ToolCall()
        tc = self._pending[index]
        if fragment.call_id is not None and index not in self._has_id:
            tc.id = fragment.call_id
            self._has_id.add(index)
        if fragment.name is not None and index not in self._has_name:
            tc.name = fragment.name
            self._has_name.add(index)
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order."""
        return [self._pending[i] for i in sorted(self._pending)]
