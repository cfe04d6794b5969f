from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from chat_memory.core.errors import (
    CompletionProviderError,
    EmbeddingFailure,
    PromptOverflow,
    RetrievalUnavailable,
    TurnError,
)
from chat_memory.core.security import sanitize_text
from chat_memory.memory.vector_store import StoreUnavailable
from chat_memory.schemas.chat import (
    ChatRequest,
    ChatResponse,
    ForgetResponse,
    HistoryResponse,
    MemoryFragmentOut,
    TurnOut,
)
from chat_memory.schemas.common import ErrorResponse
from chat_memory.services.chat_agent import ChatAgent, TurnResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

MAX_MESSAGE_LEN = 8000
MAX_CONVERSATION_ID_LEN = 128
STREAM_ERROR_PREFIX = "[error] "


def get_chat_agent(request: Request) -> ChatAgent:
    """Dependency to access the chat agent from app state."""

    return request.app.state.chat_agent


@router.post("/{conversation_id}", response_model=ChatResponse)
async def chat(
    conversation_id: str,
    payload: ChatRequest,
    agent: ChatAgent = Depends(get_chat_agent),
) -> Union[ChatResponse, StreamingResponse]:
    """Run one chat turn with conversation memory."""

    conversation_id = _clean_conversation_id(conversation_id)
    message = sanitize_text(payload.message, MAX_MESSAGE_LEN)
    if not message:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Message must not be empty"
        )

    use_stream = agent.config.streaming if payload.stream is None else payload.stream
    if use_stream:
        return await _stream_turn(agent, conversation_id, message)

    try:
        result = await agent.call(conversation_id, message)
    except TurnError as exc:
        raise _turn_http_error(exc) from exc
    return _chat_response(result)


@router.get("/{conversation_id}/history", response_model=HistoryResponse)
async def get_history(
    conversation_id: str,
    agent: ChatAgent = Depends(get_chat_agent),
) -> HistoryResponse:
    """List the turns recorded for a conversation."""

    conversation_id = _clean_conversation_id(conversation_id)
    turns = agent.conversation_log.turns(conversation_id)
    return HistoryResponse(
        conversation_id=conversation_id,
        turns=[
            TurnOut(
                turn_id=turn.turn_id,
                role=turn.role.value,
                content=turn.content,
                seq=turn.seq,
                timestamp=turn.timestamp,
                truncated=turn.truncated,
            )
            for turn in turns
        ],
    )


@router.delete("/{conversation_id}", response_model=ForgetResponse)
async def forget_conversation(
    conversation_id: str,
    agent: ChatAgent = Depends(get_chat_agent),
) -> ForgetResponse:
    """Forget a conversation's log and stored memory."""

    conversation_id = _clean_conversation_id(conversation_id)
    try:
        deleted_turns, deleted_records = await agent.forget(conversation_id)
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(
                code="STORE_UNAVAILABLE", stage="persisting", message=str(exc)
            ).model_dump(),
        ) from exc
    return ForgetResponse(
        conversation_id=conversation_id,
        deleted_turns=deleted_turns,
        deleted_records=deleted_records,
    )


async def _stream_turn(agent: ChatAgent, conversation_id: str, message: str) -> StreamingResponse:
    """Stream the reply as plain text.

    Failures before the first chunk map to an error status. Once the body has
    started, a failure ends it with a trailer line ``STREAM_ERROR_PREFIX``
    followed by the ``ErrorResponse`` JSON.
    """

    chunks = agent.stream(conversation_id, message)
    try:
        first = await anext(chunks)
    except StopAsyncIteration:
        first = ""
    except TurnError as exc:
        raise _turn_http_error(exc) from exc

    async def body() -> AsyncIterator[str]:
        async with aclosing(chunks):
            if first:
                yield first
            try:
                async for chunk in chunks:
                    yield chunk
            except TurnError as exc:
                logger.warning(
                    "Stream for conversation %s failed mid-response: %s",
                    conversation_id,
                    exc.message,
                )
                yield _stream_error_trailer(exc)

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


def _stream_error_trailer(exc: TurnError) -> str:
    payload = {"error": ErrorResponse(**exc.to_dict()).model_dump()}
    return f"\n{STREAM_ERROR_PREFIX}{json.dumps(payload)}\n"


def _chat_response(result: TurnResult) -> ChatResponse:
    return ChatResponse(
        conversation_id=result.conversation_id,
        reply=result.content,
        turn_id=result.assistant_turn.turn_id,
        memory=[
            MemoryFragmentOut(
                source_turn_id=fragment.source_turn_id,
                role=fragment.role.value,
                content=fragment.content,
                similarity_score=fragment.similarity_score,
            )
            for fragment in result.memory
        ],
        degraded=result.degraded,
        states=[state.value for state in result.states],
        token_in=result.token_in,
        token_out=result.token_out,
    )


def _turn_http_error(exc: TurnError) -> HTTPException:
    detail = ErrorResponse(**exc.to_dict()).model_dump()
    return HTTPException(status_code=_status_for(exc), detail=detail)


def _status_for(exc: TurnError) -> int:
    if isinstance(exc, PromptOverflow):
        return 413
    if isinstance(exc, CompletionProviderError):
        if exc.retryable:
            return status.HTTP_503_SERVICE_UNAVAILABLE
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, (RetrievalUnavailable, EmbeddingFailure)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _clean_conversation_id(conversation_id: str) -> str:
    cleaned = sanitize_text(conversation_id, MAX_CONVERSATION_ID_LEN)
    if not cleaned:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Conversation id is required"
        )
    return cleaned
