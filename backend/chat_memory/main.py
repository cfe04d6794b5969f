from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from chat_memory.api import chat as chat_api
from chat_memory.core.config import get_settings
from chat_memory.core.logging import setup_logging
from chat_memory.db.base import create_engine, create_sessionmaker, init_db
from chat_memory.services.chat_agent import create_chat_agent, create_vector_store


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)
    vector_store = create_vector_store(settings, sessionmaker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await app.state.chat_agent.shutdown()
        await vector_store.close()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.vector_store = vector_store
    app.state.chat_agent = create_chat_agent(
        settings, sessionmaker=sessionmaker, vector_store=vector_store
    )

    app.include_router(chat_api.router)

    return app


app = create_app()
