from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

from chat_memory.providers.base import (
    HTTPProviderAdapter,
    LLMResult,
    ProviderError,
    ProviderRuntimeConfig,
    require_api_key,
)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class OpenAIAdapter(HTTPProviderAdapter):
    """Adapter for OpenAI-compatible chat completion APIs."""

    async def complete(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        headers = self._auth_headers(cfg.api_key)
        payload = {"model": cfg.model_name, "messages": messages}
        data = await self._post_json(url, headers, payload)
        choices = data.get("choices", [])
        if not choices:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        content = choices[0].get("message", {}).get("content")
        if not content:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_usage_int(data, "prompt_tokens"),
            token_out=self._get_usage_int(data, "completion_tokens"),
        )

    async def stream_complete(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[str]:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        headers = self._auth_headers(cfg.api_key)
        payload = {"model": cfg.model_name, "messages": messages, "stream": True}
        lines = self._post_lines(url, headers, payload)
        async with aclosing(lines):
            async for line in lines:
                data = self._parse_sse_line(line)
                if data is None:
                    continue
                if data == SSE_DONE:
                    break
                for text in self._chunk_texts(data):
                    yield text

    def _auth_headers(self, api_key: Optional[str]) -> dict[str, str]:
        return {"Authorization": f"Bearer {require_api_key(api_key, 'OpenAI')}"}

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[str]:
        stripped = line.strip()
        if not stripped.startswith(SSE_DATA_PREFIX):
            return None
        return stripped[len(SSE_DATA_PREFIX) :].strip()

    @staticmethod
    def _chunk_texts(data: str) -> list[str]:
        try:
            chunk: Any = json.loads(data)
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid stream chunk from provider.") from exc
        if not isinstance(chunk, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid stream chunk.")
        error = chunk.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError("PROVIDER_STREAM_ERROR", f"Provider stream failed: {detail}")
        texts: list[str] = []
        for choice in chunk.get("choices", []):
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if isinstance(text, str) and text:
                texts.append(text)
        return texts

    @staticmethod
    def _join_url(base_url: Optional[str], path: str) -> str:
        if not base_url:
            raise ProviderError("PROVIDER_BASE_URL_MISSING", "Base URL is required for OpenAI.")
        base = base_url.rstrip("/")
        if base.endswith("/v1") and path.startswith("/v1/"):
            return base + path[3:]
        return base + path

    @staticmethod
    def _get_usage_int(data: dict[str, Any], key: str) -> Optional[int]:
        usage = data.get("usage") or {}
        value = usage.get(key)
        return int(value) if isinstance(value, int) else None
