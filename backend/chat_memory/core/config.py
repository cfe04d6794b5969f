from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_memory.memory.types import MemoryPlacement

DEFAULT_SYSTEM_PREAMBLE = "You are a helpful assistant. Answer the user's questions accurately."


@dataclass(frozen=True)
class AgentConfig:
    """Per-agent pipeline options, built once before the agent starts."""

    retrieval_top_k: int = 10
    token_budget: int = 1000
    degrade_on_retrieval_failure: bool = True
    memory_placement: MemoryPlacement = MemoryPlacement.PREPEND
    streaming: bool = False
    model_id: str = "gpt-4o-mini"
    system_preamble: str = DEFAULT_SYSTEM_PREAMBLE
    context_window: int = 0
    completion_token_reserve: int = 1024
    persistence_mode: str = "background"
    strict_persistence: bool = False
    persist_partial_streams: bool = False
    persist_retry_delays: Tuple[float, ...] = (1, 2, 4)
    max_conversations: int = 1000

    def __post_init__(self) -> None:
        if self.retrieval_top_k <= 0:
            raise ValueError("retrieval_top_k must be > 0")
        if self.token_budget <= 0:
            raise ValueError("token_budget must be > 0")
        if self.max_conversations <= 0:
            raise ValueError("max_conversations must be > 0")
        if self.persistence_mode not in {"background", "inline"}:
            raise ValueError("persistence_mode must be 'background' or 'inline'")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="127.0.0.1", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_url: str = Field(default="sqlite+aiosqlite:///./chat_memory.db", alias="DB_URL")

    chat_provider: str = Field(default="openai", alias="CHAT_PROVIDER")
    chat_model: str = Field(default="gpt-4o-mini", alias="CHAT_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    system_preamble: str = Field(default=DEFAULT_SYSTEM_PREAMBLE, alias="SYSTEM_PREAMBLE")

    retrieval_top_k: int = Field(default=10, ge=1, alias="MEMORY_RETRIEVAL_TOP_K")
    token_budget: int = Field(default=1000, ge=1, alias="MEMORY_TOKEN_BUDGET")
    degrade_on_retrieval_failure: bool = Field(
        default=True, alias="MEMORY_DEGRADE_ON_RETRIEVAL_FAILURE"
    )
    memory_placement: MemoryPlacement = Field(
        default=MemoryPlacement.PREPEND, alias="MEMORY_PLACEMENT"
    )
    streaming: bool = Field(default=False, alias="CHAT_STREAMING")
    context_window: int = Field(default=0, ge=0, alias="CHAT_CONTEXT_WINDOW")
    completion_token_reserve: int = Field(default=1024, ge=0, alias="CHAT_COMPLETION_RESERVE")

    persistence_mode: str = Field(default="background", alias="MEMORY_PERSISTENCE_MODE")
    strict_persistence: bool = Field(default=False, alias="MEMORY_STRICT_PERSISTENCE")
    persist_partial_streams: bool = Field(default=False, alias="MEMORY_PERSIST_PARTIAL_STREAMS")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    persist_retry_delays: str = Field(default="1,2,4", alias="MEMORY_PERSIST_RETRY_DELAYS")
    max_conversations: int = Field(default=1000, ge=1, alias="MEMORY_MAX_CONVERSATIONS")
    relevancy_check: bool = Field(default=False, alias="MEMORY_RELEVANCY_CHECK")

    vector_store: str = Field(default="sqlite", alias="VECTOR_STORE")
    qdrant_url: str = Field(default=":memory:", alias="QDRANT_URL")
    qdrant_api_key: str = Field(default="", alias="QDRANT_API_KEY")
    qdrant_collection: str = Field(default="chat_memory", alias="QDRANT_COLLECTION")

    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    @field_validator("memory_placement", mode="before")
    @classmethod
    def _normalize_placement(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def parsed_retry_delays(self) -> Tuple[float, ...]:
        """Return persistence retry delays parsed from a comma-delimited string."""

        raw = (self.persist_retry_delays or "").strip()
        if not raw:
            return ()
        delays = []
        for item in raw.split(","):
            item = item.strip()
            if not item:
                continue
            delays.append(max(0.0, float(item)))
        return tuple(delays)

    def agent_config(self) -> AgentConfig:
        """Build the immutable pipeline configuration for a chat agent."""

        return AgentConfig(
            retrieval_top_k=self.retrieval_top_k,
            token_budget=self.token_budget,
            degrade_on_retrieval_failure=self.degrade_on_retrieval_failure,
            memory_placement=self.memory_placement,
            streaming=self.streaming,
            model_id=self.chat_model,
            system_preamble=self.system_preamble,
            context_window=self.context_window,
            completion_token_reserve=self.completion_token_reserve,
            persistence_mode=self.persistence_mode.strip().lower(),
            strict_persistence=self.strict_persistence,
            persist_partial_streams=self.persist_partial_streams,
            persist_retry_delays=self.parsed_retry_delays(),
            max_conversations=self.max_conversations,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
