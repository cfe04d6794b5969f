from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import httpx

WORD_PATTERN = re.compile(r"[\w'-]+|[^\w\s]")


class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class Embedder(ABC):
    """Turns text into fixed-size vectors for similarity search."""

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per input text, in input order."""

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingError(f"Expected 1 embedding, got {len(vectors)}")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Offline feature-hashing embedder for tests and local runs.

    Words and adjacent word pairs are hashed into signed buckets, so texts
    sharing vocabulary land close together without any model download.
    """

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._hash_features(text) for text in texts]

    def _hash_features(self, text: str) -> list[float]:
        words = WORD_PATTERN.findall(text.lower())
        vector = [0.0] * self.dimension
        if not words:
            vector[0] = 1.0
            return vector

        features = words + [f"{left} {right}" for left, right in zip(words, words[1:])]
        for feature in features:
            digest = hashlib.sha1(feature.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            weight = 1.0 if " " not in feature else 0.5
            vector[bucket] += weight if digest[4] & 1 else -weight
        return normalize_vector(vector)


class OpenAIEmbedder(Embedder):
    """Embeddings from an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._api_key = api_key
        self._timeout_sec = timeout_sec
        self._client = http_client
        root = base_url.rstrip("/")
        self._endpoint = f"{root.removesuffix('/v1')}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        body: dict[str, Any] = {"model": self.model_name, "input": list(texts)}
        if self.model_name.startswith("text-embedding-3"):
            # v3 models can shorten their output to the configured size.
            body["dimensions"] = self.dimension

        response = await self._post(body)
        if response.status_code >= 400:
            status = response.status_code
            raise EmbeddingError(
                f"OpenAI embedding request returned {status}",
                retryable=status == 429 or status >= 500,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not JSON") from exc
        return [normalize_vector(row) for row in self._rows_in_order(payload, len(texts))]

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                return await self._client.post(self._endpoint, json=body, headers=headers)
            async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                return await client.post(self._endpoint, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise EmbeddingError("OpenAI embedding request timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"OpenAI embedding request failed: {exc}", retryable=True) from exc

    def _rows_in_order(self, payload: Any, expected: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected:
            raise EmbeddingError("Embedding response shape is invalid")
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in rows):
            rows = sorted(rows, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for row in rows:
            values = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(values, list) or len(values) != self.dimension:
                raise EmbeddingError("Embedding row is missing or has the wrong dimension")
            try:
                vectors.append([float(value) for value in values])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values") from exc
        return vectors


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm <= 0:
        return vector
    return [value / norm for value in vector]
