from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import httpx


@dataclass
class ProviderRuntimeConfig:
    """Connection details a chat completion adapter needs for one call."""

    provider: str
    model_name: str
    base_url: str | None = None
    api_key: str | None = None


@dataclass
class LLMResult:
    """A finished, non-streamed chat completion."""

    content: str
    model_provider: str
    model_name: str
    token_in: int | None = None
    token_out: int | None = None


class ChatCompletionProvider(Protocol):
    """Adapter interface for chat completion providers."""

    async def complete(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        """Return the whole completion for ``messages``."""

    def stream_complete(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[str]:
        """Yield completion text chunks as they arrive."""


class ProviderError(RuntimeError):
    """Raised when a provider operation fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or failed upstream."""


class RateLimited(ProviderError):
    """Provider rejected the call because of rate limits."""


class ContextLengthExceeded(ProviderError):
    """Provider rejected the prompt as longer than the model context."""


def build_status_error(response: httpx.Response) -> ProviderError:
    """Map an HTTP error response onto the provider error hierarchy."""

    status = response.status_code
    message, error_code = _error_details(response)
    formatted = f"Provider returned {status}: {message}"
    if status == 429:
        return RateLimited("PROVIDER_RATE_LIMIT", formatted, retryable=True, status_code=status)
    if status == 408 or status >= 500:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_UPSTREAM"
        return ProviderUnavailable(code, formatted, retryable=True, status_code=status)
    if status == 400 and error_code == "context_length_exceeded":
        return ContextLengthExceeded(
            "PROVIDER_CONTEXT_LENGTH_EXCEEDED", formatted, status_code=status
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def _error_details(response: httpx.Response) -> tuple[str, Optional[str]]:
    """Pull a short message and the provider's error code out of an error body."""

    fallback = (response.text or "Unknown error from provider.").strip()
    try:
        payload: Any = response.json()
    except ValueError:
        return fallback, None
    if not isinstance(payload, dict):
        return fallback, None

    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code") if isinstance(error.get("code"), str) else None
        detail = error.get("message") or code
        if isinstance(detail, str) and detail.strip():
            return detail.strip(), code
        return fallback, code
    if isinstance(error, str) and error.strip():
        return error.strip(), None
    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip(), None
    return fallback, None


class HTTPProviderAdapter:
    """Shared HTTP behavior for provider adapters.

    Every call goes through ``_open_response`` so transport failures and
    error statuses surface as ``ProviderError`` whether the body is read at
    once or line by line.
    """

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def _post_json(
        self, url: str, headers: dict[str, str], body: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._open_response(url, headers, body) as response:
            await response.aread()
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def _post_lines(
        self, url: str, headers: dict[str, str], body: dict[str, Any]
    ) -> AsyncIterator[str]:
        async with self._open_response(url, headers, body) as response:
            async for line in response.aiter_lines():
                yield line

    @asynccontextmanager
    async def _open_response(
        self, url: str, headers: dict[str, str], body: dict[str, Any]
    ) -> AsyncIterator[httpx.Response]:
        try:
            async with AsyncExitStack() as stack:
                client = self._client or await stack.enter_async_context(
                    httpx.AsyncClient(timeout=self._timeout)
                )
                response = await stack.enter_async_context(
                    client.stream("POST", url, headers=headers, json=body, timeout=self._timeout)
                )
                if response.status_code >= 400:
                    await response.aread()
                    raise build_status_error(response)
                yield response
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(
                "PROVIDER_CONNECTION_ERROR", "Provider connection failed.", retryable=True
            ) from exc


class MockAdapter:
    """Offline adapter that answers with the last line of the user message."""

    async def complete(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        return LLMResult(
            content=self._reply(messages),
            model_provider=cfg.provider,
            model_name=cfg.model_name,
        )

    async def stream_complete(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[str]:
        words = self._reply(messages).split(" ")
        for index, word in enumerate(words):
            yield word if index == 0 else f" {word}"

    @staticmethod
    def _reply(messages: list[dict]) -> str:
        user_messages = [item for item in messages if item.get("role") == "user"]
        if not user_messages:
            return "Mock reply."
        lines = str(user_messages[-1].get("content", "")).strip().splitlines()
        return f"Mock reply to: {lines[-1] if lines else ''}"
