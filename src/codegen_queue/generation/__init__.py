"""Client wrapping the external AI generation provider."""

from codegen_queue.generation.cache import TtlCache
from codegen_queue.generation.client import (
    GenerationClient,
    GenerationResult,
    TokenUsage,
    ValidationReport,
)
from codegen_queue.generation.errors import GenerationError
from codegen_queue.generation.provider import (
    AnthropicProvider,
    GenerationProvider,
    ProviderReply,
    ProviderRequest,
)

__all__ = [
    "AnthropicProvider",
    "GenerationClient",
    "GenerationError",
    "GenerationProvider",
    "GenerationResult",
    "ProviderReply",
    "ProviderRequest",
    "TokenUsage",
    "TtlCache",
    "ValidationReport",
]
