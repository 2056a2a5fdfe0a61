"""
Provider lookup by the names that appear in ``preferred_order``.

Every built-in name resolves to the LiteLLM backend. Names that LiteLLM
routes by model prefix (``ollama``, ``deepseek``, ``azure``) get that
prefix added to a bare model string.
"""

import logging
from typing import Any, Dict, List, Type

from rmri.core.providers.base import LLMProvider, ProviderAPIError

logger = logging.getLogger(__name__)

_registry: Dict[str, Type[LLMProvider]] = {}

ROUTED_PREFIXES = ("ollama", "deepseek", "azure")


def register_provider(name: str, provider_class: Type[LLMProvider]):
    """Make ``provider_class`` available under ``name`` (case-insensitive)."""
    if not (isinstance(provider_class, type) and issubclass(provider_class, LLMProvider)):
        raise ValueError(f"{provider_class!r} is not an LLMProvider subclass")
    key = name.lower()
    if key in _registry and _registry[key] is not provider_class:
        logger.warning(f"Provider '{key}' re-registered as {provider_class.__name__}")
    _registry[key] = provider_class


def _routed_config(name: str, config: Dict[str, Any]) -> Dict[str, Any]:
    model = config.get("model")
    if name in ROUTED_PREFIXES and model and "/" not in model:
        return {**config, "model": f"{name}/{model}"}
    return config


def get_provider(provider_name: str, config: Dict[str, Any]) -> LLMProvider:
    """
    Build the provider registered as ``provider_name``.

    Raises:
        ProviderAPIError: unknown name, or the provider constructor failed
    """
    key = provider_name.lower()
    provider_class = _registry.get(key)
    if provider_class is None:
        raise ProviderAPIError(
            provider_name,
            f"Unknown provider '{provider_name}' (known: {', '.join(sorted(_registry))})",
        )

    try:
        provider = provider_class(_routed_config(key, config))
    except Exception as e:
        raise ProviderAPIError(provider_name, f"Could not create provider: {e}", raw_error=e) from e

    logger.debug(f"Created {provider_class.__name__} for '{key}'")
    return provider


def list_providers() -> List[str]:
    return sorted(_registry)


def _register_builtins():
    from rmri.core.providers.litellm_provider import LiteLLMProvider

    for name in ("litellm", "anthropic", "openai") + ROUTED_PREFIXES:
        register_provider(name, LiteLLMProvider)


_register_builtins()
