"""Single active generation per conversation.

Starting a generation for a conversation first cancels the one that is
running and waits for it to stop, so two loops never write the same
turn.  Nothing here takes a lock; a start that is itself superseded
while waiting ends cancelled without ever running.
"""

import asyncio
import logging

from relaycore.generation import Generation, GenerationRequest, GenerationResult
from relaycore.message import ChatTurn
from relaycore.runner import Runner
from relaycore.session import Conversation, request_history
from relaycore.tools import ToolRegistry

logger = logging.getLogger(__name__)


class GenerationController:
    def __init__(self, runner: Runner | None = None):
        self.runner = runner or Runner()
        self._active: dict[str, Generation] = {}

    def active(self, conversation_id: str) -> Generation | None:
        generation = self._active.get(conversation_id)
        if generation is None or generation.done:
            return None
        return generation

    def cancel(self, conversation_id: str) -> Generation | None:
        """Request cancellation of the running generation, if any."""
        generation = self.active(conversation_id)
        if generation is not None:
            logger.info(f"Cancelling generation for {conversation_id}")
            generation.cancel()
        return generation

    async def start(
        self,
        conversation: Conversation,
        *,
        tools: ToolRegistry | None = None,
        force_tool_name: str | None = None,
    ) -> Generation:
        """Start answering the conversation's latest turns.

        The request history is built once any previous generation has
        stopped; the new assistant turn is then appended to
        ``conversation.turns`` and filled in by the loop.
        """
        generation = Generation(turn=ChatTurn.assistant())
        if not await self._claim(conversation.conversation_id, generation):
            return generation
        history = request_history(conversation.turns, conversation.system_prompt)
        conversation.turns.append(generation.turn)
        generation.request = GenerationRequest(
            provider_id=conversation.provider_id,
            model=conversation.model,
            turns=history,
            tools=tools,
            force_tool_name=force_tool_name,
            conversation_id=conversation.conversation_id,
        )
        self.runner.launch(generation)
        return generation

    async def start_request(
        self, request: GenerationRequest, turn: ChatTurn | None = None,
    ) -> Generation:
        """Like :meth:`start` for a request the host assembled itself."""
        generation = Generation(request, turn)
        if await self._claim(request.conversation_id, generation):
            self.runner.launch(generation)
        return generation

    async def shutdown(self) -> None:
        """Cancel every running generation and wait for all of them."""
        running = [g for g in self._active.values() if not g.done]
        for generation in running:
            generation.cancel()
        await asyncio.gather(*(g.stopped() for g in running))
        self._active.clear()

    async def _claim(self, conversation_id: str, generation: Generation) -> bool:
        prior = self._active.get(conversation_id)
        self._active[conversation_id] = generation
        if prior is not None and not prior.done:
            logger.info(f"Superseding generation for {conversation_id}")
            prior.cancel()
            await prior.stopped()
        if generation.cancel_requested:
            generation.finish(GenerationResult(cancelled=True))
            return False
        return True
