from __future__ import annotations

import pytest

from chat_memory.memory.trimmer import ContextTrimmer, trim_fragments
from chat_memory.memory.types import MemoryFragment, TokenBudget


class NumericCounter:
    """Token counter stub: fragment content is its own token count."""

    def estimate(self, text: str, model_id=None) -> int:
        return int(text)


def _fragments(*sizes: int) -> list[MemoryFragment]:
    return [
        MemoryFragment(
            source_turn_id=f"turn-{index}",
            embedding_vector=(),
            content=str(size),
            similarity_score=1.0 - index * 0.1,
        )
        for index, size in enumerate(sizes)
    ]


def test_keeps_only_prefix_that_fits_budget():
    fragments = _fragments(50, 40, 30)
    trimmed = trim_fragments(fragments, TokenBudget(85), NumericCounter())
    assert trimmed == fragments[:1]


def test_keeps_everything_when_budget_is_exact():
    fragments = _fragments(50, 40, 30)
    assert trim_fragments(fragments, TokenBudget(120), NumericCounter()) == fragments


def test_stops_at_first_overflow_even_if_later_fragment_fits():
    fragments = _fragments(50, 60, 10)
    assert trim_fragments(fragments, TokenBudget(70), NumericCounter()) == fragments[:1]


def test_returns_empty_when_first_fragment_is_too_large():
    assert trim_fragments(_fragments(200, 5), TokenBudget(100), NumericCounter()) == []


@pytest.mark.parametrize("budget", [1, 45, 90, 119, 500])
def test_trimmed_tokens_never_exceed_budget(budget):
    trimmer = ContextTrimmer(NumericCounter())
    trimmed = trimmer.trim(_fragments(50, 40, 30, 20), TokenBudget(budget))
    assert trimmer.token_count(trimmed) <= budget


def test_trim_is_idempotent():
    trimmer = ContextTrimmer(NumericCounter())
    budget = TokenBudget(95)
    once = trimmer.trim(_fragments(50, 40, 30), budget)
    assert trimmer.trim(once, budget) == once


def test_budget_must_be_positive():
    with pytest.raises(ValueError):
        TokenBudget(0)


class RecordingCounter(NumericCounter):
    def __init__(self) -> None:
        self.seen: list[str] = []

    def estimate(self, text: str, model_id=None) -> int:
        self.seen.append(text)
        return super().estimate(text, model_id)


def test_budget_is_charged_for_fragment_content_only():
    counter = RecordingCounter()
    fragments = _fragments(30, 20)

    trimmed = trim_fragments(fragments, TokenBudget(50), counter)

    assert trimmed == fragments
    assert counter.seen == ["30", "20"]
