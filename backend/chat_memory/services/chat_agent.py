from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Iterable, Optional, Protocol, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_memory.core.config import AgentConfig, Settings
from chat_memory.core.errors import (
    CompletionProviderError,
    EmbeddingFailure,
    PromptOverflow,
    RetrievalUnavailable,
)
from chat_memory.memory.conversation_log import ConversationLog
from chat_memory.memory.embedder import DeterministicEmbedder, Embedder, OpenAIEmbedder
from chat_memory.memory.retriever import MemoryRetriever
from chat_memory.memory.token_counter import TokenCounter, TokenEstimator
from chat_memory.memory.trimmer import ContextTrimmer
from chat_memory.memory.types import (
    AugmentedPrompt,
    BasePrompt,
    ConversationTurn,
    MemoryFragment,
    Role,
    TokenBudget,
)
from chat_memory.memory.vector_store import QdrantVectorStore, SQLiteVectorStore, VectorStore
from chat_memory.memory.writer import MemoryWriter, PersistOutcome
from chat_memory.providers.base import (
    ChatCompletionProvider,
    MockAdapter,
    ProviderError,
    ProviderRuntimeConfig,
)
from chat_memory.providers.openai_adapter import OpenAIAdapter
from chat_memory.services.prompt_augmentor import PromptAugmentor
from chat_memory.services.relevancy import RelevancyEvaluator, RelevancyListener

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    RECEIVED = "received"
    RETRIEVING = "retrieving"
    TRIMMING = "trimming"
    AUGMENTING = "augmenting"
    COMPLETING = "completing"
    PERSISTING = "persisting"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class TurnTrace:
    """Ordered record of the states one turn went through."""

    states: list[TurnState] = field(default_factory=lambda: [TurnState.RECEIVED])

    @property
    def current(self) -> TurnState:
        return self.states[-1]

    def advance(self, state: TurnState) -> None:
        self.states.append(state)

    def fail(self) -> None:
        self.states.append(TurnState.ERRORED)


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one completed (or cut short) chat turn."""

    conversation_id: str
    user_turn: ConversationTurn
    assistant_turn: ConversationTurn
    prompt: AugmentedPrompt
    memory: tuple[MemoryFragment, ...]
    retrieved_count: int
    states: tuple[TurnState, ...]
    degraded: bool = False
    truncated: bool = False
    token_in: Optional[int] = None
    token_out: Optional[int] = None

    @property
    def content(self) -> str:
        return self.assistant_turn.content


class ChatAgentListener(Protocol):
    """Post-completion hooks invoked after a turn finishes."""

    async def on_turn_completed(self, result: TurnResult) -> None:
        """Called once the turn's persistence has been attempted."""

    async def on_persistence_failed(self, outcome: PersistOutcome) -> None:
        """Called for each turn that could not be stored."""


@dataclass
class _PreparedTurn:
    conversation_id: str
    index: int
    user_turn: ConversationTurn
    prompt: AugmentedPrompt
    memory: tuple[MemoryFragment, ...]
    retrieved_count: int
    degraded: bool
    trace: TurnTrace


class ChatAgent:
    """Runs chat turns through retrieval, trimming, augmentation and completion."""

    def __init__(
        self,
        *,
        provider: ChatCompletionProvider,
        runtime_config: ProviderRuntimeConfig,
        retriever: MemoryRetriever,
        writer: MemoryWriter,
        config: Optional[AgentConfig] = None,
        counter: Optional[TokenEstimator] = None,
        trimmer: Optional[ContextTrimmer] = None,
        augmentor: Optional[PromptAugmentor] = None,
        conversation_log: Optional[ConversationLog] = None,
        listeners: Iterable[ChatAgentListener] = (),
    ) -> None:
        self._provider = provider
        self._runtime_config = runtime_config
        self._retriever = retriever
        self._writer = writer
        self._config = config or AgentConfig(model_id=runtime_config.model_name)
        counter = counter or TokenCounter()
        self._trimmer = trimmer or ContextTrimmer(counter, self._config.model_id)
        self._augmentor = augmentor or PromptAugmentor(
            counter=counter,
            model_id=self._config.model_id,
            placement=self._config.memory_placement,
            context_window=self._config.context_window,
            completion_token_reserve=self._config.completion_token_reserve,
        )
        self._budget = TokenBudget(self._config.token_budget)
        self._log = conversation_log or ConversationLog(
            max_conversations=self._config.max_conversations
        )
        self._listeners: list[ChatAgentListener] = list(listeners)
        self._turn_index: dict[str, int] = {}
        self._pending: dict[str, list[tuple[int, asyncio.Task]]] = {}

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def conversation_log(self) -> ConversationLog:
        return self._log

    def add_listener(self, listener: ChatAgentListener) -> None:
        self._listeners.append(listener)

    async def call(self, conversation_id: str, user_message: str) -> TurnResult:
        """Run one turn with a blocking completion call."""

        prepared = await self._prepare(conversation_id, user_message)
        prepared.trace.advance(TurnState.COMPLETING)
        try:
            result = await self._provider.complete(
                self._runtime_config, prepared.prompt.to_messages()
            )
        except ProviderError as exc:
            prepared.trace.fail()
            raise _completion_error(exc) from exc
        return await self._finish(
            prepared,
            result.content,
            truncated=False,
            token_in=result.token_in,
            token_out=result.token_out,
        )

    async def stream(self, conversation_id: str, user_message: str) -> AsyncIterator[str]:
        """Run one turn, yielding completion chunks as they arrive.

        Persistence happens after the last chunk. If the caller stops early
        the turn is recorded as truncated and only persisted when
        ``persist_partial_streams`` is enabled.
        """

        prepared = await self._prepare(conversation_id, user_message)
        prepared.trace.advance(TurnState.COMPLETING)
        chunks: list[str] = []
        finished = False
        chunk_stream = self._provider.stream_complete(
            self._runtime_config, prepared.prompt.to_messages()
        )
        try:
            async with aclosing(chunk_stream):
                async for chunk in chunk_stream:
                    chunks.append(chunk)
                    yield chunk
            finished = True
        except ProviderError as exc:
            prepared.trace.fail()
            raise _completion_error(exc) from exc
        except Exception as exc:
            prepared.trace.fail()
            logger.exception(
                "Completion stream crashed for conversation %s", prepared.conversation_id
            )
            raise CompletionProviderError(
                f"Completion stream failed: {exc}", code="PROVIDER_STREAM_FAILED"
            ) from exc
        finally:
            if not finished and prepared.trace.current is TurnState.COMPLETING:
                self._abandon_stream(prepared, "".join(chunks))

        await self._finish(prepared, "".join(chunks), truncated=False)

    async def respond(
        self, conversation_id: str, user_message: str, stream: Optional[bool] = None
    ) -> Union[TurnResult, AsyncIterator[str]]:
        """Dispatch to ``stream`` or ``call`` according to the streaming flag."""

        use_stream = self._config.streaming if stream is None else stream
        if use_stream:
            return self.stream(conversation_id, user_message)
        return await self.call(conversation_id, user_message)

    async def forget(self, conversation_id: str) -> tuple[int, int]:
        """Drop the conversation log and its stored memory.

        Returns the number of log turns and stored records removed.
        """

        await self.drain(conversation_id)
        removed_turns = self._log.clear(conversation_id)
        self._turn_index.pop(conversation_id, None)
        removed_records = await self._writer.vector_store.delete_conversation(conversation_id)
        return removed_turns, removed_records

    async def drain(self, conversation_id: Optional[str] = None) -> None:
        """Wait for background persistence to finish."""

        tasks = self._pending_tasks(conversation_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give background persistence ``timeout`` seconds, then cancel the rest."""

        tasks = self._pending_tasks(None)
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d pending memory writes on shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _prepare(self, conversation_id: str, user_message: str) -> _PreparedTurn:
        if not user_message.strip():
            raise ValueError("user_message must not be empty")

        trace = TurnTrace()
        index = self._next_turn_index(conversation_id)
        user_turn = self._log.append(conversation_id, Role.USER, user_message)
        await self._await_earlier_persistence(conversation_id, index)

        trace.advance(TurnState.RETRIEVING)
        degraded = False
        try:
            fragments = await self._retriever.retrieve(
                user_message,
                self._config.retrieval_top_k,
                conversation_id=conversation_id,
            )
        except RetrievalUnavailable as exc:
            if not self._config.degrade_on_retrieval_failure:
                trace.fail()
                raise
            logger.warning(
                "Memory retrieval degraded for conversation %s: %s", conversation_id, exc.message
            )
            fragments = []
            degraded = True
        except EmbeddingFailure:
            trace.fail()
            raise

        trace.advance(TurnState.TRIMMING)
        trimmed = self._trimmer.trim(fragments, self._budget)

        trace.advance(TurnState.AUGMENTING)
        try:
            prompt = self._augmentor.augment(
                BasePrompt(
                    system_preamble=self._config.system_preamble, user_message=user_message
                ),
                trimmed,
            )
        except PromptOverflow as exc:
            trace.fail()
            logger.warning(
                "Prompt overflow in conversation %s: %s", conversation_id, exc.message
            )
            raise

        return _PreparedTurn(
            conversation_id=conversation_id,
            index=index,
            user_turn=user_turn,
            prompt=prompt,
            memory=tuple(trimmed),
            retrieved_count=len(fragments),
            degraded=degraded,
            trace=trace,
        )

    async def _finish(
        self,
        prepared: _PreparedTurn,
        content: str,
        *,
        truncated: bool,
        token_in: Optional[int] = None,
        token_out: Optional[int] = None,
    ) -> TurnResult:
        assistant_turn, to_persist = self._record_assistant(prepared, content, truncated)

        if self._config.persistence_mode == "inline":
            outcomes = await self._persist_turns(to_persist)
            failure = next((item.error for item in outcomes if item.error is not None), None)
            if failure is not None and self._config.strict_persistence:
                prepared.trace.fail()
                raise failure
            prepared.trace.advance(TurnState.DONE)
            result = _build_result(prepared, assistant_turn, truncated, token_in, token_out)
            await self._notify_completed(result)
            return result

        prepared.trace.advance(TurnState.DONE)
        result = _build_result(prepared, assistant_turn, truncated, token_in, token_out)
        self._schedule_post_turn(prepared, result, to_persist)
        return result

    def _abandon_stream(self, prepared: _PreparedTurn, partial: str) -> None:
        logger.info(
            "Stream for conversation %s stopped after %d chars",
            prepared.conversation_id,
            len(partial),
        )
        assistant_turn, to_persist = self._record_assistant(prepared, partial, truncated=True)
        prepared.trace.advance(TurnState.DONE)
        result = _build_result(prepared, assistant_turn, True, None, None)
        # Awaiting is not possible while the generator is being closed.
        self._schedule_post_turn(prepared, result, to_persist)

    def _record_assistant(
        self, prepared: _PreparedTurn, content: str, truncated: bool
    ) -> tuple[ConversationTurn, list[ConversationTurn]]:
        assistant_turn = self._log.append(
            prepared.conversation_id, Role.ASSISTANT, content, truncated=truncated
        )
        to_persist = [prepared.user_turn, assistant_turn]
        if truncated and not self._config.persist_partial_streams:
            to_persist = []
        if to_persist:
            prepared.trace.advance(TurnState.PERSISTING)
        return assistant_turn, to_persist

    def _schedule_post_turn(
        self,
        prepared: _PreparedTurn,
        result: TurnResult,
        to_persist: list[ConversationTurn],
    ) -> None:
        conversation_id = prepared.conversation_id
        task = asyncio.create_task(self._run_post_turn(result, to_persist))
        self._pending.setdefault(conversation_id, []).append((prepared.index, task))
        task.add_done_callback(lambda done: self._forget_task(conversation_id, done))

    async def _run_post_turn(
        self, result: TurnResult, to_persist: list[ConversationTurn]
    ) -> None:
        try:
            await self._persist_turns(to_persist)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Memory persistence crashed for conversation %s", result.conversation_id
            )
        await self._notify_completed(result)

    async def _persist_turns(self, turns: list[ConversationTurn]) -> list[PersistOutcome]:
        outcomes: list[PersistOutcome] = []
        for turn in turns:
            outcome = await self._writer.persist(turn)
            outcomes.append(outcome)
            if not outcome.ok:
                await self._notify_persistence_failed(outcome)
        return outcomes

    async def _notify_completed(self, result: TurnResult) -> None:
        for listener in self._listeners:
            try:
                await listener.on_turn_completed(result)
            except Exception:  # noqa: BLE001
                logger.exception("Chat agent listener failed in on_turn_completed")

    async def _notify_persistence_failed(self, outcome: PersistOutcome) -> None:
        for listener in self._listeners:
            try:
                await listener.on_persistence_failed(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("Chat agent listener failed in on_persistence_failed")

    def _next_turn_index(self, conversation_id: str) -> int:
        # Re-inserting keeps the dict ordered from least to most recently active.
        index = self._turn_index.pop(conversation_id, 0) + 1
        self._turn_index[conversation_id] = index
        while len(self._turn_index) > self._config.max_conversations:
            oldest = next(iter(self._turn_index))
            if oldest in self._pending:
                # Its writes still order against later turns.
                break
            del self._turn_index[oldest]
        return index

    async def _await_earlier_persistence(self, conversation_id: str, index: int) -> None:
        # Turn N must be stored before turn N+2 retrieves; N+1 may still be in flight.
        earlier = [
            task
            for task_index, task in self._pending.get(conversation_id, [])
            if task_index <= index - 2 and not task.done()
        ]
        if earlier:
            await asyncio.gather(*earlier, return_exceptions=True)

    def _pending_tasks(self, conversation_id: Optional[str]) -> list[asyncio.Task]:
        if conversation_id is not None:
            entries = self._pending.get(conversation_id, [])
        else:
            entries = [entry for items in self._pending.values() for entry in items]
        return [task for _, task in entries if not task.done()]

    def _forget_task(self, conversation_id: str, task: asyncio.Task) -> None:
        entries = self._pending.get(conversation_id)
        if not entries:
            return
        remaining = [entry for entry in entries if entry[1] is not task]
        if remaining:
            self._pending[conversation_id] = remaining
        else:
            self._pending.pop(conversation_id, None)


def _build_result(
    prepared: _PreparedTurn,
    assistant_turn: ConversationTurn,
    truncated: bool,
    token_in: Optional[int],
    token_out: Optional[int],
) -> TurnResult:
    return TurnResult(
        conversation_id=prepared.conversation_id,
        user_turn=prepared.user_turn,
        assistant_turn=assistant_turn,
        prompt=prepared.prompt,
        memory=prepared.memory,
        retrieved_count=prepared.retrieved_count,
        states=tuple(prepared.trace.states),
        degraded=prepared.degraded,
        truncated=truncated,
        token_in=token_in,
        token_out=token_out,
    )


def _completion_error(exc: ProviderError) -> CompletionProviderError:
    return CompletionProviderError(exc.message, code=exc.code, retryable=exc.retryable)


def create_chat_agent(
    settings: Settings,
    *,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[ChatCompletionProvider] = None,
    embedder: Optional[Embedder] = None,
    vector_store: Optional[VectorStore] = None,
    listeners: Iterable[ChatAgentListener] = (),
) -> ChatAgent:
    """Wire a chat agent and its collaborators from settings."""

    config = settings.agent_config()
    embedder = embedder or create_embedder(settings)
    vector_store = vector_store or create_vector_store(settings, sessionmaker)
    provider = provider or create_chat_provider(settings)
    runtime_config = ProviderRuntimeConfig(
        provider=settings.chat_provider.strip().lower(),
        model_name=settings.chat_model,
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key or None,
    )
    listeners = list(listeners)
    if settings.relevancy_check:
        listeners.append(RelevancyListener(RelevancyEvaluator(provider, runtime_config)))
    return ChatAgent(
        provider=provider,
        runtime_config=runtime_config,
        retriever=MemoryRetriever(embedder=embedder, vector_store=vector_store),
        writer=MemoryWriter(
            embedder=embedder,
            vector_store=vector_store,
            retry_delays=config.persist_retry_delays,
        ),
        config=config,
        listeners=listeners,
    )


def create_chat_provider(settings: Settings) -> ChatCompletionProvider:
    provider = settings.chat_provider.strip().lower()
    if provider == "openai":
        return OpenAIAdapter()
    if provider != "mock":
        logger.warning("Unknown CHAT_PROVIDER=%s; fallback to mock", provider)
    return MockAdapter()


def create_vector_store(
    settings: Settings,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> VectorStore:
    backend = settings.vector_store.strip().lower()
    if backend == "qdrant":
        return QdrantVectorStore(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key or None,
            collection=settings.qdrant_collection,
        )
    if backend != "sqlite":
        logger.warning("Unknown VECTOR_STORE=%s; fallback to sqlite", backend)
    if sessionmaker is None:
        raise ValueError("SQLite vector store requires a sessionmaker")
    return SQLiteVectorStore(sessionmaker)


def create_embedder(settings: Settings) -> Embedder:
    provider = settings.embed_provider.strip().lower()
    if provider == "deterministic":
        model_name = settings.embed_model.strip() or "deterministic-v1"
        return DeterministicEmbedder(dimension=settings.embed_dim, model_name=model_name)

    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip() or settings.openai_api_key.strip()
        if not api_key:
            logger.warning(
                "EMBED_PROVIDER=openai but no API key is configured; fallback to deterministic"
            )
            return DeterministicEmbedder(dimension=settings.embed_dim)
        model_name = settings.embed_model.strip() or "text-embedding-3-small"
        return OpenAIEmbedder(
            base_url=settings.openai_base_url,
            api_key=api_key,
            model_name=model_name,
            dimension=settings.embed_dim,
        )

    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return DeterministicEmbedder(dimension=settings.embed_dim)
