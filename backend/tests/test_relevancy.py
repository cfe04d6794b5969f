from __future__ import annotations

import pytest

from chat_memory.core.config import Settings
from chat_memory.core.errors import CompletionProviderError
from chat_memory.memory.types import MemoryFragment
from chat_memory.providers.base import LLMResult, ProviderRuntimeConfig, RateLimited
from chat_memory.services.chat_agent import create_chat_agent
from chat_memory.services.relevancy import RelevancyEvaluator, RelevancyListener

CFG = ProviderRuntimeConfig(provider="mock", model_name="judge-model")


class JudgeProvider:
    """Provider stub answering every evaluation with a fixed verdict."""

    def __init__(self, verdict: str) -> None:
        self.verdict = verdict
        self.prompts: list[str] = []

    async def complete(self, cfg, messages):
        self.prompts.append(messages[-1]["content"])
        return LLMResult(content=self.verdict, model_provider=cfg.provider, model_name=cfg.model_name)

    async def stream_complete(self, cfg, messages):
        yield self.verdict


class RateLimitedProvider:
    async def complete(self, cfg, messages):
        raise RateLimited("PROVIDER_RATE_LIMIT", "slow down", retryable=True, status_code=429)

    async def stream_complete(self, cfg, messages):
        yield ""


@pytest.mark.anyio
async def test_yes_verdict_passes_and_prompt_carries_context():
    provider = JudgeProvider("YES")
    evaluator = RelevancyEvaluator(provider, CFG)
    context = [
        MemoryFragment(
            source_turn_id="t1",
            embedding_vector=(),
            content="My name is Alice.",
            similarity_score=0.9,
        )
    ]

    result = await evaluator.evaluate("What is my name?", "Your name is Alice.", context)

    assert result.passed is True
    assert result.score == 1.0
    prompt = provider.prompts[0]
    assert "Query:\nWhat is my name?" in prompt
    assert "Response:\nYour name is Alice." in prompt
    assert "Context:\nMy name is Alice." in prompt


@pytest.mark.anyio
async def test_no_verdict_fails():
    evaluator = RelevancyEvaluator(JudgeProvider("NO, the response invents facts."), CFG)

    result = await evaluator.evaluate("q", "r", ["unrelated"])

    assert result.passed is False
    assert result.score == 0.0
    assert result.feedback.startswith("NO")


@pytest.mark.anyio
async def test_provider_failure_is_typed():
    evaluator = RelevancyEvaluator(RateLimitedProvider(), CFG)

    with pytest.raises(CompletionProviderError) as exc_info:
        await evaluator.evaluate("q", "r", [])

    assert exc_info.value.code == "PROVIDER_RATE_LIMIT"
    assert exc_info.value.retryable is True


def _settings(**overrides) -> Settings:
    values = {
        "CHAT_PROVIDER": "mock",
        "CHAT_MODEL": "stub-model",
        "CHAT_CONTEXT_WINDOW": 8192,
        "MEMORY_PERSISTENCE_MODE": "inline",
        "EMBED_PROVIDER": "deterministic",
        "EMBED_DIM": 64,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.mark.anyio
async def test_listener_checks_turns_that_used_memory(sessionmaker):
    listener = RelevancyListener(RelevancyEvaluator(JudgeProvider("YES"), CFG))
    agent = create_chat_agent(
        _settings(), sessionmaker=sessionmaker, provider=JudgeProvider("Alice"), listeners=[listener]
    )

    await agent.call("c1", "My name is Alice.")
    assert list(listener.results) == []

    second = await agent.call("c1", "What is my name?")
    await agent.shutdown()

    [(turn_id, verdict)] = listener.results
    assert turn_id == second.assistant_turn.turn_id
    assert verdict.passed is True


@pytest.mark.anyio
async def test_listener_swallows_judge_failures(sessionmaker):
    listener = RelevancyListener(RelevancyEvaluator(RateLimitedProvider(), CFG))
    agent = create_chat_agent(
        _settings(), sessionmaker=sessionmaker, provider=JudgeProvider("ok"), listeners=[listener]
    )

    await agent.call("c1", "First message.")
    result = await agent.call("c1", "Second message.")
    await agent.shutdown()

    assert result.content == "ok"
    assert list(listener.results) == []


@pytest.mark.anyio
async def test_factory_enables_relevancy_check_from_settings(sessionmaker):
    provider = JudgeProvider("YES")
    agent = create_chat_agent(
        _settings(MEMORY_RELEVANCY_CHECK=True), sessionmaker=sessionmaker, provider=provider
    )

    await agent.call("c1", "The door is blue.")
    await agent.call("c1", "What colour is the door?")
    await agent.shutdown()

    evaluations = [prompt for prompt in provider.prompts if prompt.startswith("Your task")]
    assert len(evaluations) == 1
    assert "Query:\nWhat colour is the door?" in evaluations[0]
