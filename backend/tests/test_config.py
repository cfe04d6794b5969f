from __future__ import annotations

import logging

import pytest

from chat_memory.core.config import AgentConfig, Settings
from chat_memory.core.logging import RedactionFilter, setup_logging
from chat_memory.core.security import redact_secrets, sanitize_text
from chat_memory.memory.types import MemoryPlacement


def test_agent_config_defaults():
    config = AgentConfig()
    assert config.retrieval_top_k == 10
    assert config.token_budget == 1000
    assert config.degrade_on_retrieval_failure is True
    assert config.memory_placement is MemoryPlacement.PREPEND
    assert config.streaming is False
    assert config.persistence_mode == "background"
    assert config.persist_retry_delays == (1, 2, 4)


@pytest.mark.parametrize(
    "options",
    [
        {"retrieval_top_k": 0},
        {"token_budget": 0},
        {"max_conversations": 0},
        {"persistence_mode": "eventually"},
    ],
)
def test_agent_config_rejects_invalid_values(options):
    with pytest.raises(ValueError):
        AgentConfig(**options)


def test_settings_build_agent_config_from_env(monkeypatch):
    monkeypatch.setenv("CHAT_MODEL", "gpt-4o")
    monkeypatch.setenv("MEMORY_RETRIEVAL_TOP_K", "4")
    monkeypatch.setenv("MEMORY_TOKEN_BUDGET", "250")
    monkeypatch.setenv("MEMORY_PLACEMENT", " INLINE ")
    monkeypatch.setenv("MEMORY_DEGRADE_ON_RETRIEVAL_FAILURE", "false")
    monkeypatch.setenv("MEMORY_PERSISTENCE_MODE", "Inline")
    monkeypatch.setenv("MEMORY_PERSIST_RETRY_DELAYS", "0.5, 1,,-3")
    monkeypatch.setenv("CHAT_STREAMING", "true")
    monkeypatch.setenv("MEMORY_MAX_CONVERSATIONS", "50")

    config = Settings(_env_file=None).agent_config()

    assert config.model_id == "gpt-4o"
    assert config.retrieval_top_k == 4
    assert config.token_budget == 250
    assert config.memory_placement is MemoryPlacement.INLINE
    assert config.degrade_on_retrieval_failure is False
    assert config.persistence_mode == "inline"
    assert config.persist_retry_delays == (0.5, 1.0, 0.0)
    assert config.streaming is True
    assert config.max_conversations == 50


def test_empty_retry_delays_disable_retries(monkeypatch):
    monkeypatch.setenv("MEMORY_PERSIST_RETRY_DELAYS", "")
    assert Settings(_env_file=None).parsed_retry_delays() == ()


def test_redaction_filter_scrubs_keys_from_message_and_args():
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="calling with sk-abcdef123456 and %s",
        args=("Bearer abcdefghijk",),
        exc_info=None,
    )

    assert RedactionFilter().filter(record) is True
    assert record.getMessage() == "calling with sk-*** and Bearer ***"


def test_redaction_filter_keeps_numeric_args_formattable():
    record = logging.LogRecord(
        name="test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Cancelled %d pending writes for %s after %.1fs",
        args=(3, "sk-abcdef123456", 2.5),
        exc_info=None,
    )

    RedactionFilter().filter(record)

    assert record.getMessage() == "Cancelled 3 pending writes for sk-*** after 2.5s"


class CollectingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(self.format(record))


def test_child_logger_output_is_redacted_and_formatted_after_setup():
    handler = CollectingHandler()
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        setup_logging("INFO")
        logging.getLogger("chat_memory.services.chat_agent").warning(
            "Cancelled %d pending memory writes (key %s)", 3, "sk-abcdef123456"
        )
    finally:
        root.removeHandler(handler)

    assert handler.messages == ["Cancelled 3 pending memory writes (key sk-***)"]


def test_security_helpers():
    assert redact_secrets("key=sk-live_1234567890") == "key=sk-***"
    assert sanitize_text("  hello world  ", 5) == "hello"
