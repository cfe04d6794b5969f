from __future__ import annotations

from chat_memory.memory import token_counter
from chat_memory.memory.token_counter import (
    DEFAULT_CONTEXT_WINDOW,
    TokenCounter,
    approximate_tokens,
    context_window_for,
)


class WordEncoding:
    def encode(self, text: str, disallowed_special=()) -> list[str]:
        return text.split()


def test_approximate_tokens_uses_four_chars_per_token():
    assert approximate_tokens("") == 0
    assert approximate_tokens("   ") == 0
    assert approximate_tokens("ab") == 1
    assert approximate_tokens("abcd" * 10) == 10


def test_unknown_model_falls_back_to_approximation():
    counter = TokenCounter()
    text = "The quick brown fox jumps over the lazy dog."
    assert counter.estimate(text, "stub-model") == approximate_tokens(text)
    assert counter.estimate(text, "stub-model") == counter.estimate(text, "stub-model")
    assert counter.estimate("", "stub-model") == 0


def test_known_model_uses_tiktoken_and_caches_encoding(monkeypatch):
    calls: list[str] = []

    def fake_encoding_for_model(model_id: str) -> WordEncoding:
        calls.append(model_id)
        return WordEncoding()

    monkeypatch.setattr(token_counter.tiktoken, "encoding_for_model", fake_encoding_for_model)
    counter = TokenCounter()

    assert counter.estimate("one two three", "gpt-4o") == 3
    assert counter.estimate("four five", "gpt-4o") == 2
    assert calls == ["gpt-4o"]


def test_unloadable_encoding_falls_back_to_approximation(monkeypatch):
    def broken_encoding_for_model(model_id: str):
        raise OSError("offline")

    monkeypatch.setattr(token_counter.tiktoken, "encoding_for_model", broken_encoding_for_model)
    counter = TokenCounter()

    text = "a" * 40
    assert counter.estimate(text, "gpt-4o") == 10


def test_context_window_resolution():
    assert context_window_for("gpt-4o", override=4096) == 4096
    assert context_window_for("gpt-4") == 8_192
    assert context_window_for("gpt-4o-mini-2024-07-18") == 128_000
    assert context_window_for("gpt-3.5-turbo-0125") == 16_385
    assert context_window_for("stub-model") == DEFAULT_CONTEXT_WINDOW
