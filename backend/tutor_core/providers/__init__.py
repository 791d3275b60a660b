"""LLM provider resolution and backend adapters."""

from .adapters import (
    ADAPTERS,
    GeminiAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    ProviderReply,
    ProviderRequest,
    build_generation_params,
    is_reasoning_model,
)
from .config import DEFAULT_MODELS, ProviderConfigResolver, ProviderSelection
from .gateway import ProviderGateway

__all__ = [
    "ADAPTERS",
    "DEFAULT_MODELS",
    "GeminiAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderConfigResolver",
    "ProviderGateway",
    "ProviderReply",
    "ProviderRequest",
    "ProviderSelection",
    "build_generation_params",
    "is_reasoning_model",
]
