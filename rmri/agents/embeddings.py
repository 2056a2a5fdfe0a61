"""
Embedding interface.

``NullEmbedder`` is a stand-in encoder: it returns the first distinct
longer tokens of the text instead of a dense vector. It is deterministic,
which keeps clustering reproducible in tests.
"""

from abc import ABC, abstractmethod

from rmri.models.micro import EmbeddingVector


class Embedder(ABC):
    """Turns text into an ``EmbeddingVector``."""

    dimension: int

    @abstractmethod
    def embed(self, text: str) -> EmbeddingVector:
        """Embed ``text``."""


class NullEmbedder(Embedder):
    """Token-set placeholder for a real encoder."""

    def __init__(self, dimension: int = 768, max_tokens: int = 50, min_word_length: int = 4):
        self.dimension = dimension
        self.max_tokens = max_tokens
        self.min_word_length = min_word_length

    def embed(self, text: str) -> EmbeddingVector:
        text = text or ""
        seen = []
        for word in text.lower().split():
            if len(word) >= self.min_word_length and word not in seen:
                seen.append(word)
                if len(seen) == self.max_tokens:
                    break
        return EmbeddingVector(dimension=self.dimension, vector=seen, text_length=len(text))
