from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from chat_memory.core.errors import PromptOverflow
from chat_memory.memory.token_counter import TokenEstimator, context_window_for
from chat_memory.memory.types import AugmentedPrompt, BasePrompt, MemoryFragment, MemoryPlacement

MESSAGE_OVERHEAD_TOKENS = 4


class PromptAugmentor:
    """Attach retrieved memory to the outbound prompt."""

    def __init__(
        self,
        *,
        counter: TokenEstimator,
        model_id: str,
        placement: MemoryPlacement = MemoryPlacement.PREPEND,
        context_window: int = 0,
        completion_token_reserve: int = 1024,
    ) -> None:
        self._counter = counter
        self._model_id = model_id
        self._placement = MemoryPlacement(placement)
        self._context_window = context_window_for(model_id, context_window)
        self._completion_token_reserve = max(0, completion_token_reserve)

    @property
    def context_window(self) -> int:
        return self._context_window

    def augment(
        self,
        base_prompt: BasePrompt,
        fragments: Sequence[MemoryFragment],
        placement: Optional[MemoryPlacement] = None,
    ) -> AugmentedPrompt:
        """Build the prompt for one turn.

        Raises ``PromptOverflow`` when the prompt plus the completion reserve
        does not fit the model context window. User content is never cut.
        """

        prompt = AugmentedPrompt(
            system_preamble=base_prompt.system_preamble,
            injected_memory=tuple(fragments),
            user_message=base_prompt.user_message,
            placement=placement or self._placement,
        )
        required = self.prompt_tokens(prompt) + self._completion_token_reserve
        if required > self._context_window:
            raise PromptOverflow(required_tokens=required, limit=self._context_window)
        return prompt

    def prompt_tokens(self, prompt: AugmentedPrompt) -> int:
        total = 0
        for message in prompt.to_messages():
            total += self._counter.estimate(message["content"], self._model_id)
            total += MESSAGE_OVERHEAD_TOKENS
        return total
