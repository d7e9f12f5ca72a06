"""Interactive streaming chat with a toy search tool.

Demonstrates:
- Defining a tool with @tool and registering it in a ToolRegistry
- Starting generations through a GenerationController
- Following a generation with subscribe() while text is flushed
- Titling the conversation from its first message

Usage:
    uv run --env-file=.env examples/chat_example.py --provider openai --model gpt-4o-mini
    uv run --env-file=.env examples/chat_example.py --provider anthropic --model claude-sonnet-4-5 --trace
"""

import argparse
import asyncio
import uuid

from relaycore.cancellation import GenerationController
from relaycore.generation import Generation, Phase
from relaycore.instrumentation import configure_logging
from relaycore.message import ChatTurn
from relaycore.provider import env_credential, get_provider
from relaycore.runner import generate_title
from relaycore.session import Conversation
from relaycore.tools import ToolRegistry, tool

FACTS = {
    "berlin": "Berlin has more bridges than Venice.",
    "octopus": "An octopus has three hearts.",
    "honey": "Honey found in Egyptian tombs was still edible.",
}


@tool
def web_search(query: str):
    """Search a tiny offline fact index.

    Args:
        query: Keywords to look up.
    """
    hits = [fact for key, fact in FACTS.items() if key in query.lower()]
    return "\n".join(hits) or "No results."


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from relaycore.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def printer():
    printed = {"content": 0, "phase": None}

    def on_update(generation: Generation):
        if generation.phase is Phase.SEARCHING and printed["phase"] is not Phase.SEARCHING:
            print("\n[searching]", flush=True)
        printed["phase"] = generation.phase
        text = generation.content
        if not generation.turn.is_error:
            print(text[printed["content"]:], end="", flush=True)
            printed["content"] = len(text)

    return on_update


async def main(provider_id: str, model: str):
    conversation = Conversation(
        conversation_id=uuid.uuid4().hex,
        provider_id=provider_id,
        model=model,
        system_prompt="You are a concise assistant. Use web_search for facts.",
    )
    controller = GenerationController()
    tools = ToolRegistry([web_search])
    title = None

    while True:
        try:
            text = input("\nyou> ").strip()
        except EOFError:
            break
        if not text:
            continue
        conversation.turns.append(ChatTurn.user(text))
        generation = await controller.start(conversation, tools=tools)
        generation.subscribe(printer())
        await generation.stopped()
        if generation.turn.is_error:
            print(f"\n[error] {generation.content}")
        else:
            turn = generation.turn
            print(f"\n[{turn.completion_tokens} tokens, {turn.duration_ms} ms]")

        credential = env_credential(provider_id)
        if title is None and credential:
            title = await generate_title(get_provider(provider_id), model, credential, text)
            print(f"[title] {title}")

    await controller.shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--provider", choices=["openai", "openrouter", "anthropic"], default="openai")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--trace", action="store_true", help="Print OpenTelemetry spans to console")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")
    if args.trace:
        setup_tracing("relaycore-chat")

    asyncio.run(main(args.provider, args.model))
