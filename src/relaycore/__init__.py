from relaycore.cancellation import GenerationController
from relaycore.errors import (
    ConfigurationError,
    InvalidCredentialError,
    NetworkError,
    ProviderError,
    RateLimitedError,
    RelayError,
)
from relaycore.events import (
    Content,
    FinishReason,
    Reasoning,
    StreamEvent,
    ToolCallFragment,
    Usage,
)
from relaycore.generation import (
    Generation,
    GenerationRequest,
    GenerationResult,
    Phase,
)
from relaycore.instrumentation import configure_logging, instrument, uninstrument
from relaycore.message import ChatTurn, TurnRole
from relaycore.provider import (
    AnthropicProvider,
    ModelProvider,
    OpenAIStyleProvider,
    ProviderId,
    env_credential,
    get_provider,
)
from relaycore.runner import Runner, generate_title
from relaycore.session import (
    Conversation,
    delete_exchange,
    regenerate,
    request_history,
    retry_last,
)
from relaycore.streaming import ToolCall, ToolCallAccumulator
from relaycore.tools import (
    Tool,
    ToolDefinition,
    ToolRecoverableError,
    ToolRegistry,
    tool,
)

__all__ = [
    "AnthropicProvider",
    "ChatTurn",
    "ConfigurationError",
    "Content",
    "Conversation",
    "FinishReason",
    "Generation",
    "GenerationController",
    "GenerationRequest",
    "GenerationResult",
    "InvalidCredentialError",
    "ModelProvider",
    "NetworkError",
    "OpenAIStyleProvider",
    "Phase",
    "ProviderError",
    "ProviderId",
    "RateLimitedError",
    "Reasoning",
    "RelayError",
    "Runner",
    "StreamEvent",
    "Tool",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "ToolDefinition",
    "ToolRecoverableError",
    "ToolRegistry",
    "TurnRole",
    "Usage",
    "configure_logging",
    "delete_exchange",
    "env_credential",
    "generate_title",
    "get_provider",
    "instrument",
    "regenerate",
    "request_history",
    "retry_last",
    "tool",
    "uninstrument",
]
