"""
Base provider interface.

Every backend returns an ``LLMResponse`` so callers can inspect the finish
reason and detect max-token truncation without knowing the backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from rmri.core.errors import ProviderAPIError

__all__ = ["LLMProvider", "LLMResponse", "UsageStats", "ProviderAPIError"]


@dataclass
class UsageStats:
    """Token usage for a single call."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model: Optional[str] = None
    provider: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class LLMResponse:
    """Unified response from any provider."""
    content: str
    model: str
    usage: UsageStats = field(default_factory=UsageStats)
    finish_reason: Optional[str] = None
    raw_response: Any = None


class LLMProvider(ABC):
    """Abstract LLM backend."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.request_count = 0

    @abstractmethod
    async def generate_async(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        stop_sequences: Optional[List[str]] = None,
    ) -> LLMResponse:
        """Generate a completion for ``prompt``."""

    def _update_usage_stats(self, usage: UsageStats):
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.request_count += 1

    def get_usage_stats(self) -> Dict[str, Any]:
        """Cumulative usage for this provider instance."""
        return {
            "requests": self.request_count,
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
        }
