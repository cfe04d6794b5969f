import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from chat_memory.core.config import get_settings
from chat_memory.db.base import create_engine, create_sessionmaker, init_db
from chat_memory.main import create_app
from chat_memory.memory.embedder import DeterministicEmbedder


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def sessionmaker(tmp_path):
    db_path = tmp_path / "test_chat_memory.db"
    engine = create_engine(f"sqlite+aiosqlite:///{db_path}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def embedder():
    return DeterministicEmbedder(dimension=64)


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test_chat_api.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("CHAT_PROVIDER", "mock")
    monkeypatch.setenv("CHAT_MODEL", "stub-model")
    monkeypatch.setenv("CHAT_CONTEXT_WINDOW", "8192")
    monkeypatch.setenv("MEMORY_PERSISTENCE_MODE", "inline")
    monkeypatch.setenv("VECTOR_STORE", "sqlite")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_DIM", "64")
    get_settings.cache_clear()
    return create_app()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.chat_agent.shutdown()
    await app.state.engine.dispose()
    get_settings.cache_clear()
