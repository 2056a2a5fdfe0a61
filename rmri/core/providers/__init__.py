"""LLM provider abstraction and implementations."""

from rmri.core.providers.base import LLMProvider, LLMResponse, UsageStats
from rmri.core.providers.factory import get_provider, list_providers, register_provider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "UsageStats",
    "get_provider",
    "list_providers",
    "register_provider",
]
