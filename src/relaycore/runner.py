import asyncio
import logging
import time
from contextlib import aclosing
from typing import Callable

from relaycore.errors import ConfigurationError, ProviderError, RelayError
from relaycore.events import (
    TOOL_CALLS,
    Content,
    FinishReason,
    Reasoning,
    ToolCallFragment,
    Usage,
)
from relaycore.flush import DEFAULT_FLUSH_INTERVAL, FlushScheduler
from relaycore.generation import (
    Generation,
    GenerationRequest,
    GenerationResult,
    Phase,
)
from relaycore.instrumentation import (
    generation_span,
    record_error,
    record_usage,
    round_span,
    tool_span,
)
from relaycore.message import ChatTurn
from relaycore.provider import (
    ModelProvider,
    display_name,
    env_credential,
    get_provider,
)
from relaycore.streaming import ToolCallAccumulator
from relaycore.tools import ToolDefinition

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 3

TITLE_PROMPT = (
    "Your job is to create a short creative title (2-6 words) that captures "
    "the vibe or intent of the user's message. Be witty and interpretive, "
    "not literal. Reply with ONLY the title. No quotes, no punctuation."
)
TITLE_FALLBACK_LENGTH = 40

CredentialLookup = Callable[[str], "str | None"]
ProviderLookup = Callable[[str], ModelProvider]


class Runner:
    """Executes the streaming tool-use loop of a generation.

    Each round streams one provider response.  Text goes through a
    :class:`~relaycore.flush.FlushScheduler` into the generation's
    turn, tool-call fragments into a
    :class:`~relaycore.streaming.ToolCallAccumulator`.  When the round
    ends in tool use, the tools run one after another, their results are
    appended to the request history and a new round starts, up to
    ``max_iterations`` tool rounds.

    ``start()`` launches a generation as its own task.  ``generate()``
    is the loop itself.

    Args:
        max_iterations: Number of tool-execution rounds after which the
            loop stops and returns what it has.
        flush_interval: Minimum seconds between two publications of
            buffered text.
        credentials: ``provider_id -> secret`` lookup.  A missing secret
            fails the generation before any request is made.
        providers: ``provider_id -> ModelProvider`` lookup.
    """

    def __init__(
        self,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        credentials: CredentialLookup = env_credential,
        providers: ProviderLookup = get_provider,
    ):
        self.max_iterations = max_iterations
        self.flush_interval = flush_interval
        self.credentials = credentials
        self.providers = providers

    def start(self, request: GenerationRequest, turn: ChatTurn | None = None) -> Generation:
        """Launch a generation in the background and return its handle."""
        generation = Generation(request, turn)
        self.launch(generation)
        return generation

    def launch(self, generation: Generation) -> asyncio.Task:
        task = asyncio.create_task(self.run(generation))
        task.add_done_callback(lambda _: self._settle(generation))
        generation.task = task
        return task

    def _settle(self, generation: Generation) -> None:
        # A task cancelled before its first step never enters run().
        if not generation.done:
            generation.finish(self._final_result(generation, cancelled=True))

    async def run(self, generation: Generation) -> GenerationResult | None:
        """Run ``generate()`` and record its outcome on the handle.

        Errors end up on ``generation.error`` and the turn is marked as
        an error turn; they are not raised from here.
        """
        try:
            return await self.generate(generation)
        except RelayError as e:
            logger.info(f"Generation failed: {e}")
            generation.fail(e, e.user_message)
        except asyncio.CancelledError:
            generation.finish(self._final_result(generation, cancelled=True))
            raise
        except Exception as e:
            logger.exception("Generation failed unexpectedly")
            generation.fail(e, f"Something went wrong: {e}")
        return None

    async def generate(self, generation: Generation) -> GenerationResult:
        request = generation.request
        if request is None:
            raise ConfigurationError("Generation has no request")
        provider = self.providers(request.provider_id)
        credential = self.credentials(request.provider_id)
        if not credential:
            raise ConfigurationError(
                f"No API key set. Add your {display_name(request.provider_id)} key."
            )

        tools = request.tools.definitions() if request.tools else []
        turns = list(request.turns)
        iteration = 0

        async with generation_span(provider.name, request.model) as span:
            try:
                while not generation.cancel_requested:
                    force_tool_name = request.force_tool_name if iteration == 0 else None
                    result = await self._run_round(
                        generation, provider, turns, credential,
                        tools, force_tool_name, iteration,
                    )
                    generation.rounds.append(result)
                    self._record_round(generation.turn, result)

                    if generation.cancel_requested:
                        break
                    if result.finish_reason != TOOL_CALLS and not result.tool_calls:
                        break

                    await self._execute_tools(generation, turns, result)
                    iteration += 1
                    if iteration >= self.max_iterations:
                        logger.info(
                            f"Stopping after {iteration} tool iterations"
                        )
                        break
            except RelayError as e:
                record_error(span, e)
                raise
            if generation.rounds:
                record_usage(span, generation.rounds[-1].usage)

        final = self._final_result(generation, cancelled=generation.cancel_requested)
        generation.finish(final)
        return final

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def _run_round(
        self,
        generation: Generation,
        provider: ModelProvider,
        turns: list[ChatTurn],
        credential: str,
        tools: list[ToolDefinition],
        force_tool_name: str | None,
        iteration: int,
    ) -> GenerationResult:
        model = generation.request.model
        generation.set_phase(Phase.THINKING)
        scheduler = FlushScheduler(generation.publish, self.flush_interval)
        accumulator = ToolCallAccumulator()
        content: list[str] = []
        reasoning: list[str] = []
        finish_reason: str | None = None
        usage: Usage | None = None
        first_token: float | None = None
        started = time.monotonic()

        logger.info(
            f"Round {iteration} to {provider.name} model={model} "
            f"turns={len(turns)} forced_tool={force_tool_name}"
        )
        async with round_span(provider.name, model, iteration) as span:
            stream = provider.stream_complete(
                model, turns, credential,
                tools=tools or None, force_tool_name=force_tool_name,
            )
            try:
                async with aclosing(stream):
                    async for event in stream:
                        if generation.cancel_requested:
                            break
                        if isinstance(event, Content):
                            first_token = first_token or time.monotonic()
                            content.append(event.text)
                            generation.set_phase(Phase.STREAMING)
                            scheduler.push_content(event.text)
                        elif isinstance(event, Reasoning):
                            first_token = first_token or time.monotonic()
                            reasoning.append(event.text)
                            generation.set_phase(Phase.THINKING)
                            scheduler.push_reasoning(event.text)
                        elif isinstance(event, ToolCallFragment):
                            accumulator.feed(event)
                        elif isinstance(event, FinishReason):
                            finish_reason = event.kind
                        elif isinstance(event, Usage):
                            usage = event
                        if generation.cancel_requested:
                            break
            except ProviderError as e:
                record_error(span, e)
                raise
            finally:
                scheduler.drain()
            record_usage(span, usage)

        return GenerationResult(
            content="".join(content),
            reasoning="".join(reasoning),
            tool_calls=accumulator.finalize(),
            finish_reason=finish_reason,
            usage=usage,
            first_token_latency=(first_token - started) if first_token else None,
            duration=time.monotonic() - started,
            rounds=1,
            cancelled=generation.cancel_requested,
        )

    async def _execute_tools(
        self,
        generation: Generation,
        turns: list[ChatTurn],
        result: GenerationResult,
    ) -> None:
        registry = generation.request.tools
        generation.set_phase(Phase.SEARCHING)
        turns.append(ChatTurn.assistant(result.content, tool_calls=result.tool_calls))
        for call in result.tool_calls:
            if generation.cancel_requested:
                return
            async with tool_span(call.name, call.id):
                if registry is None:
                    output = f"Unknown tool: {call.name}"
                else:
                    output = await registry.execute(call)
            turns.append(ChatTurn.tool_result(call.id, output))

    @staticmethod
    def _record_round(turn: ChatTurn, result: GenerationResult) -> None:
        if result.usage is not None:
            turn.prompt_tokens = result.usage.prompt_tokens
            turn.completion_tokens = result.usage.completion_tokens
        if result.first_token_latency is not None:
            turn.latency_ms = int(result.first_token_latency * 1000)
        turn.duration_ms = int(result.duration * 1000)

    @staticmethod
    def _final_result(generation: Generation, cancelled: bool) -> GenerationResult:
        if not generation.rounds:
            return GenerationResult(
                content=generation.content,
                reasoning=generation.reasoning,
                cancelled=cancelled,
            )
        last = generation.rounds[-1]
        return GenerationResult(
            content=generation.content,
            reasoning=generation.reasoning,
            tool_calls=last.tool_calls,
            finish_reason=last.finish_reason,
            usage=last.usage,
            first_token_latency=last.first_token_latency,
            duration=last.duration,
            rounds=len(generation.rounds),
            cancelled=cancelled,
        )


async def generate_title(
    provider: ModelProvider,
    model: str,
    credential: str,
    first_message: str,
) -> str:
    """Ask the model for a short conversation title.

    Falls back to the start of ``first_message`` when the provider fails
    or answers with nothing.
    """
    fallback = first_message[:TITLE_FALLBACK_LENGTH]
    turns = [ChatTurn.system(TITLE_PROMPT), ChatTurn.user(first_message)]
    parts: list[str] = []
    try:
        async with aclosing(provider.stream_complete(model, turns, credential)) as stream:
            async for event in stream:
                if isinstance(event, Content):
                    parts.append(event.text)
    except ProviderError as e:
        logger.info(f"Title generation failed: {e}")
        return fallback
    return "".join(parts).strip() or fallback
