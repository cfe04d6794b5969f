from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from chat_memory.memory.token_counter import TokenEstimator
from chat_memory.memory.types import MemoryFragment, TokenBudget


def trim_fragments(
    fragments: Sequence[MemoryFragment],
    budget: TokenBudget,
    counter: TokenEstimator,
    model_id: Optional[str] = None,
) -> list[MemoryFragment]:
    """Return the longest prefix of ``fragments`` that fits ``budget``.

    Fragments are taken in input order (best ranked first) and are never cut;
    the first fragment that would overflow ends the selection.

    The budget is charged for fragment content only. The MEMORY block header
    and the ``- [role] `` line prefixes are not counted here; they are part of
    the full prompt that ``PromptAugmentor`` checks against the context window.
    """

    selected: list[MemoryFragment] = []
    used = 0
    for fragment in fragments:
        cost = counter.estimate(fragment.content, model_id)
        if used + cost > budget.max_tokens:
            break
        selected.append(fragment)
        used += cost
    return selected


class ContextTrimmer:
    """Bounds retrieved memory to a token budget for one model."""

    def __init__(self, counter: TokenEstimator, model_id: Optional[str] = None) -> None:
        self._counter = counter
        self._model_id = model_id

    def trim(
        self, fragments: Sequence[MemoryFragment], budget: TokenBudget
    ) -> list[MemoryFragment]:
        return trim_fragments(fragments, budget, self._counter, self._model_id)

    def token_count(self, fragments: Sequence[MemoryFragment]) -> int:
        return sum(self._counter.estimate(item.content, self._model_id) for item in fragments)
