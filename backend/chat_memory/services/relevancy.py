from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chat_memory.core.errors import CompletionProviderError
from chat_memory.memory.types import MemoryFragment
from chat_memory.providers.base import ChatCompletionProvider, ProviderError, ProviderRuntimeConfig

if TYPE_CHECKING:
    from chat_memory.memory.writer import PersistOutcome
    from chat_memory.services.chat_agent import TurnResult

logger = logging.getLogger(__name__)

EVALUATION_PROMPT = (
    "Your task is to evaluate if the response for the query\n"
    "is in line with the context information provided.\n\n"
    "You have two options to answer. Either YES/ NO.\n\n"
    "Answer - YES, if the response for the query\n"
    "is in line with context information otherwise NO.\n\n"
    "Query:\n{query}\n\n"
    "Response:\n{response}\n\n"
    "Context:\n{context}\n\n"
    "Answer:"
)


@dataclass(frozen=True)
class EvaluationResult:
    """Verdict of a relevancy check."""

    passed: bool
    score: float
    feedback: str


class RelevancyEvaluator:
    """Asks a chat model whether a response agrees with the retrieved memory."""

    def __init__(self, provider: ChatCompletionProvider, runtime_config: ProviderRuntimeConfig) -> None:
        self._provider = provider
        self._runtime_config = runtime_config

    async def evaluate(
        self, query: str, response: str, context: Sequence[MemoryFragment] | Sequence[str]
    ) -> EvaluationResult:
        context_text = "\n".join(
            item.content if isinstance(item, MemoryFragment) else str(item) for item in context
        )
        prompt = EVALUATION_PROMPT.format(
            query=query, response=response, context=context_text or "(none)"
        )
        try:
            result = await self._provider.complete(
                self._runtime_config, [{"role": "user", "content": prompt}]
            )
        except ProviderError as exc:
            raise CompletionProviderError(
                exc.message, code=exc.code, retryable=exc.retryable
            ) from exc
        feedback = result.content.strip()
        passed = feedback.lower().startswith("yes")
        return EvaluationResult(passed=passed, score=1.0 if passed else 0.0, feedback=feedback)


class RelevancyListener:
    """Chat agent listener that checks each answered turn against its injected memory.

    Turns without memory and cut-short streams are skipped. Verdicts are
    logged and the most recent ones kept in ``results`` as
    ``(assistant_turn_id, EvaluationResult)`` pairs.
    """

    def __init__(self, evaluator: RelevancyEvaluator, history_size: int = 100) -> None:
        self._evaluator = evaluator
        self.results: deque[tuple[str, EvaluationResult]] = deque(maxlen=max(1, history_size))

    async def on_turn_completed(self, result: TurnResult) -> None:
        if result.truncated or not result.memory:
            return
        turn_id = result.assistant_turn.turn_id
        try:
            verdict = await self._evaluator.evaluate(
                result.user_turn.content, result.content, result.memory
            )
        except CompletionProviderError as exc:
            logger.warning("Relevancy check skipped for turn %s: %s", turn_id, exc.message)
            return

        self.results.append((turn_id, verdict))
        if verdict.passed:
            logger.info("Turn %s is in line with its memory", turn_id)
        else:
            logger.warning(
                "Turn %s may not match its memory (%d fragments): %s",
                turn_id,
                len(result.memory),
                verdict.feedback,
            )

    async def on_persistence_failed(self, outcome: PersistOutcome) -> None:
        return None
