"""
LiteLLM backend.

LiteLLM picks the upstream API from the model string, so this one class
serves Anthropic, OpenAI, Ollama, DeepSeek and Azure models alike.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import litellm

from rmri.core.providers.base import (
    LLMProvider,
    LLMResponse,
    ProviderAPIError,
    UsageStats,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

# model-string prefixes LiteLLM routes on, checked before name heuristics
_PREFIX_BACKENDS = {
    "ollama/": "ollama",
    "deepseek/": "deepseek",
    "azure/": "azure",
    "openai/": "openai",
    "anthropic/": "anthropic",
}


def backend_for_model(model: str) -> str:
    """Best guess at the upstream API a LiteLLM model string targets."""
    lowered = model.lower()
    for prefix, backend in _PREFIX_BACKENDS.items():
        if lowered.startswith(prefix):
            return backend
    if "claude" in lowered:
        return "anthropic"
    if lowered.startswith(("gpt", "o1", "o3")):
        return "openai"
    return "unknown"


class LiteLLMProvider(LLMProvider):
    """
    Completion calls through ``litellm.acompletion``.

    Config keys: ``model``, ``api_key``, ``api_base``, ``max_tokens``,
    ``temperature`` and ``timeout`` (seconds). Only ``model`` matters for
    local backends such as Ollama.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.model = config.get("model") or DEFAULT_MODEL
        self.backend = backend_for_model(self.model)
        self.defaults = {
            "max_tokens": config.get("max_tokens") or 2048,
            "temperature": 0.3 if config.get("temperature") is None else config["temperature"],
            "timeout": config.get("timeout") or 120,
        }
        # None values are dropped so LiteLLM falls back to its env lookup
        self.credentials = {
            key: config[key] for key in ("api_key", "api_base") if config.get(key)
        }
        logger.debug(f"LiteLLM provider ready: {self.model} via {self.backend}")

    def _completion_kwargs(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: Optional[int],
        temperature: Optional[float],
        json_mode: bool,
        stop_sequences: Optional[List[str]],
    ) -> Dict[str, Any]:
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.defaults["max_tokens"],
            "temperature": self.defaults["temperature"] if temperature is None else temperature,
            "timeout": self.defaults["timeout"],
            **self.credentials,
        }
        if stop_sequences:
            kwargs["stop"] = stop_sequences
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _to_response(self, raw) -> LLMResponse:
        choice = raw.choices[0] if raw.choices else None
        text = (choice.message.content if choice else None) or ""

        token_counts = getattr(raw, "usage", None)
        prompt_tokens = getattr(token_counts, "prompt_tokens", 0) or 0
        completion_tokens = getattr(token_counts, "completion_tokens", 0) or 0
        usage = UsageStats(
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=self.model,
            provider=f"litellm/{self.backend}",
            timestamp=datetime.now(),
        )
        self._update_usage_stats(usage)

        return LLMResponse(
            content=text,
            model=getattr(raw, "model", None) or self.model,
            usage=usage,
            finish_reason=choice.finish_reason if choice else None,
            raw_response=raw,
        )

    async def generate_async(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        stop_sequences: Optional[List[str]] = None,
    ) -> LLMResponse:
        """
        Run one completion.

        ``json_mode`` asks the backend for a JSON object via
        ``response_format``; the finish reason is passed through untouched
        so callers can spot ``length`` truncation.

        Raises:
            ProviderAPIError: any failure inside LiteLLM
        """
        kwargs = self._completion_kwargs(
            prompt, system, max_tokens, temperature, json_mode, stop_sequences
        )
        try:
            raw = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.warning(f"LiteLLM call to {self.model} failed: {e}")
            raise ProviderAPIError(self.backend, f"completion failed: {e}", raw_error=e) from e
        return self._to_response(raw)
