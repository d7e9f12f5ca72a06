"""The host-facing handle of one in-flight generation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from relaycore.errors import RelayError
from relaycore.events import Usage
from relaycore.message import ChatTurn
from relaycore.streaming import ToolCall
from relaycore.tools import ToolRegistry

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    THINKING = "thinking"
    SEARCHING = "searching"
    STREAMING = "streaming"


@dataclass
class GenerationRequest:
    """Everything the orchestration loop needs to start a generation.

    ``turns`` is the request history as the host built it; the loop
    works on a copy and never mutates it.
    """

    provider_id: str
    model: str
    turns: list[ChatTurn]
    tools: ToolRegistry | None = None
    force_tool_name: str | None = None
    conversation_id: str = ""


@dataclass
class GenerationResult:
    """Outcome of a round, or of a whole generation.

    Timings are in seconds.  For a whole generation ``content`` and
    ``reasoning`` span every round, while the tool calls, finish reason,
    usage and timings are those of the last round.
    """

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: Usage | None = None
    first_token_latency: float | None = None
    duration: float = 0.0
    rounds: int = 0
    cancelled: bool = False


class Generation:
    """Handle to a single generation.

    The orchestration loop is the only writer of :attr:`turn`; hosts
    read ``content``, ``reasoning`` and ``phase``, or :meth:`subscribe`
    to be called after every flush and phase change.
    """

    def __init__(
        self,
        request: GenerationRequest | None = None,
        turn: ChatTurn | None = None,
    ):
        self.request = request
        self.turn = turn if turn is not None else ChatTurn.assistant()
        self.rounds: list[GenerationResult] = []
        self.result: GenerationResult | None = None
        self.error: BaseException | None = None
        self.task: asyncio.Task | None = None
        self._phase = Phase.IDLE
        self._cancel_requested = False
        self._stopped = asyncio.Event()
        self._subscribers: list[Callable[["Generation"], None]] = []

    @property
    def content(self) -> str:
        return self.turn.content

    @property
    def reasoning(self) -> str:
        return self.turn.reasoning or ""

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._stopped.is_set()

    def cancel(self) -> None:
        """Ask the loop to stop.

        The flag is seen after the event being processed.  When the
        generation runs as a task, the task is cancelled too so a read
        waiting on a silent provider is interrupted.
        """
        if self.done:
            return
        self._cancel_requested = True
        if self.task is not None and self.task is not asyncio.current_task():
            self.task.cancel()

    def subscribe(self, callback: Callable[["Generation"], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def stopped(self) -> None:
        """Wait until the generation has finished, failed or been cancelled."""
        await self._stopped.wait()

    async def wait(self) -> GenerationResult:
        """Wait for the result; raises the error if the generation failed."""
        await self._stopped.wait()
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise RelayError("Generation stopped without a result")
        return self.result

    # Writer side, used by the orchestration loop only.

    def set_phase(self, phase: Phase) -> None:
        if phase is not self._phase:
            self._phase = phase
            self._notify()

    def publish(self, content_delta: str, reasoning_delta: str) -> None:
        if reasoning_delta:
            self.turn.reasoning = (self.turn.reasoning or "") + reasoning_delta
        if content_delta:
            self.turn.content += content_delta
        self._notify()

    def finish(self, result: GenerationResult) -> None:
        self.result = result
        self._stop()

    def fail(self, error: BaseException, message: str) -> None:
        self.turn.content = message
        self.turn.is_error = True
        self.error = error
        self._stop()

    def _stop(self) -> None:
        self._phase = Phase.IDLE
        self._stopped.set()
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self)
            except Exception:
                logger.exception("Generation subscriber raised")
