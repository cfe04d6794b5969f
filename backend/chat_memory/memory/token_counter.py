"""
Token estimation for memory budgeting.

Known OpenAI model ids are counted with their tiktoken encoding. Anything
else (or an encoding that cannot be loaded) falls back to a character
approximation so a turn never fails on token counting.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import tiktoken

logger = logging.getLogger(__name__)

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4.1-mini": 1_047_576,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o3-mini": 200_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000

CHARS_PER_TOKEN = 4


class TokenEstimator(Protocol):
    """Anything that can estimate token length of a text for a model."""

    def estimate(self, text: str, model_id: Optional[str] = None) -> int:
        """Return the estimated token count."""


def approximate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    compact = text.strip()
    if not compact:
        return 0
    return max(1, len(compact) // CHARS_PER_TOKEN)


class TokenCounter:
    """tiktoken-backed token estimator with a character-count fallback."""

    def __init__(self) -> None:
        self._encodings: dict[str, Optional[tiktoken.Encoding]] = {}

    def estimate(self, text: str, model_id: Optional[str] = None) -> int:
        if not text:
            return 0
        encoding = self._encoding_for(model_id or "")
        if encoding is None:
            return approximate_tokens(text)
        return len(encoding.encode(text, disallowed_special=()))

    def _encoding_for(self, model_id: str) -> Optional[tiktoken.Encoding]:
        if model_id in self._encodings:
            return self._encodings[model_id]

        encoding: Optional[tiktoken.Encoding] = None
        if model_id:
            try:
                encoding = tiktoken.encoding_for_model(model_id)
            except KeyError:
                logger.info("No tokenizer known for model %s; using approximation", model_id)
            except (OSError, ValueError) as exc:
                logger.warning("Tokenizer for model %s could not be loaded: %s", model_id, exc)
        self._encodings[model_id] = encoding
        return encoding


def context_window_for(model_id: str, override: int = 0) -> int:
    """Resolve context window size from an explicit override or the model name."""
    if override > 0:
        return override
    if model_id in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[model_id]
    # Longest prefix wins so "gpt-4o-mini-2024-07-18" maps to gpt-4o-mini, not gpt-4.
    for key in sorted(MODEL_CONTEXT_WINDOWS, key=len, reverse=True):
        if model_id.startswith(key):
            return MODEL_CONTEXT_WINDOWS[key]
    return DEFAULT_CONTEXT_WINDOW
