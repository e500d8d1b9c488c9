"""
Token counting and usage tracking.

Counts tokens for normalized requests ahead of a call and carries the
usage a backend reports after it.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import tiktoken

from .models import NormalizedRequest

logger = logging.getLogger(__name__)

# Per-turn framing overhead added by chat-style APIs
TOKENS_PER_TURN = 4
DEFAULT_OUTPUT_RATIO = 0.3


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a backend for one call."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class TokenEstimate:
    """Pre-flight token estimate for a request."""
    input_tokens: int
    estimated_output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.estimated_output_tokens


class TokenCounter:
    """Base token counter.

    Subclasses implement count_text(); count() adds per-turn overhead and
    derives the output estimate from the input.
    """

    def __init__(self, output_ratio: float = DEFAULT_OUTPUT_RATIO):
        if output_ratio < 0:
            raise ValueError("output_ratio must be >= 0")
        self.output_ratio = output_ratio

    def count_text(self, text: str) -> int:
        raise NotImplementedError

    def count(self, request: NormalizedRequest) -> TokenEstimate:
        """Estimate input and output tokens for a normalized request."""
        input_tokens = sum(
            self.count_text(turn.text()) + TOKENS_PER_TURN for turn in request.turns
        )
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=math.ceil(input_tokens * self.output_ratio),
        )


class CharacterTokenCounter(TokenCounter):
    """Rough estimate of one token per four characters."""

    def count_text(self, text: str) -> int:
        return math.ceil(len(text) / 4)


class TiktokenCounter(TokenCounter):
    """Counts tokens with a tiktoken encoding.

    The encoding is loaded on first use; if it cannot be loaded the
    counter degrades to the character estimate.
    """

    def __init__(self, encoding_name: str = "cl100k_base", output_ratio: float = DEFAULT_OUTPUT_RATIO):
        super().__init__(output_ratio)
        self.encoding_name = encoding_name
        self._encoding = None
        self._fallback: Optional[CharacterTokenCounter] = None

    def _load(self) -> None:
        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        except Exception as e:
            logger.warning("tiktoken encoding %s unavailable, using character estimate: %s",
                           self.encoding_name, e)
            self._fallback = CharacterTokenCounter(self.output_ratio)

    def count_text(self, text: str) -> int:
        if self._encoding is None and self._fallback is None:
            self._load()
        if self._fallback is not None:
            return self._fallback.count_text(text)
        return len(self._encoding.encode(text, disallowed_special=()))
