"""
LLM client with provider fallback.

``LLMClient.generate`` walks the caller's preferred provider order and
returns the first successful response. When every provider fails it raises
``LLMFallbackExhaustedError``; the micro processor treats that as a signal
to switch to rule-based extraction.
"""

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from rmri.config import LLMConfig
from rmri.core.errors import LLMFallbackExhaustedError, ProviderAPIError
from rmri.core.providers.base import LLMProvider
from rmri.core.providers.factory import get_provider

logger = logging.getLogger(__name__)

# finish reasons meaning the output was cut at the token limit
TRUNCATION_FINISH_REASONS = frozenset({"length", "max_tokens", "MAX_TOKENS"})


class LLMRequestConfig(BaseModel):
    """Per-run generation settings carried in every job payload."""

    model_config = ConfigDict(frozen=True)

    preferred_order: List[str] = Field(default_factory=lambda: ["anthropic", "openai"])
    max_tokens: int = 2048
    temperature: float = 0.3


class GenerationResult(BaseModel):
    """Text plus the provider that produced it."""

    output: str
    provider: str
    model: str
    finish_reason: Optional[str] = None

    @property
    def is_truncated(self) -> bool:
        return self.finish_reason in TRUNCATION_FINISH_REASONS

    @property
    def metadata(self) -> Dict[str, Optional[str]]:
        return {"finish_reason": self.finish_reason}


class LLMClient:
    """
    Fallback wrapper over named providers.

    Example:
        ```python
        client = LLMClient.from_config(get_config().llm)
        result = await client.generate(
            "List three gaps",
            LLMRequestConfig(preferred_order=["openai"]),
            json_mode=True,
        )
        ```
    """

    def __init__(self, providers: Dict[str, LLMProvider]):
        self.providers = {name.lower(): provider for name, provider in providers.items()}

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        """Instantiate every provider named in ``config.providers``."""
        providers = {}
        for name, provider_config in config.providers.items():
            try:
                providers[name] = get_provider(name, {
                    "model": provider_config.model,
                    "api_key": provider_config.api_key,
                    "api_base": provider_config.api_base,
                    "timeout": provider_config.timeout,
                    "max_tokens": config.max_tokens,
                    "temperature": config.temperature,
                })
            except ProviderAPIError as e:
                logger.warning(f"Skipping provider {name}: {e}")
        return cls(providers)

    async def generate(
        self,
        prompt: str,
        config: Optional[LLMRequestConfig] = None,
        json_mode: bool = False,
        system: Optional[str] = None
    ) -> GenerationResult:
        """
        Generate text, trying providers in ``config.preferred_order``.

        Raises:
            LLMFallbackExhaustedError: If no provider produced a response
        """
        config = config or LLMRequestConfig()
        errors: Dict[str, str] = {}

        for name in config.preferred_order:
            provider = self.providers.get(name.lower())
            if provider is None:
                errors[name] = "not configured"
                continue

            try:
                response = await provider.generate_async(
                    prompt,
                    system=system,
                    max_tokens=config.max_tokens,
                    temperature=config.temperature,
                    json_mode=json_mode,
                )
            except Exception as e:
                logger.warning(f"Provider {name} failed, trying next: {e}")
                errors[name] = str(e)
                continue

            return GenerationResult(
                output=response.content or "",
                provider=name,
                model=response.model,
                finish_reason=response.finish_reason,
            )

        raise LLMFallbackExhaustedError(errors)
