"""
EmbeddingGenerator: text -> fixed-dimension float vector.

Remote mode is enabled when both an endpoint and an API key are configured
(EMBEDDING_SERVICE_ENDPOINT / EMBEDDING_SERVICE_API_KEY). Every call checks
the cache first. On a miss the remote endpoint is tried exactly once; any
failure (non-2xx, malformed body, wrong dimension, timeout, network error)
falls back to a deterministic local vector. Callers never see an exception
from this module.

The local vector is not semantically meaningful. It only guarantees a
well-formed, dimensionally-correct result under every condition, empty
input included.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from polystore.config import DEFAULT_EMBEDDING_DIMENSION
from polystore.embeddings.cache import EmbeddingCache, get_embedding_cache
from polystore.errors import RemoteServiceError
from polystore.similarity import normalize

logger = logging.getLogger(__name__)

MAX_LOCAL_TOKENS = 100
DEFAULT_BATCH_SIZE = 50


class EmbeddingGenerator:
    """Remote-with-fallback embedding generation over a shared cache."""

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
        model: str = "text-embedding",
        timeout: float = 30.0,
        cache: EmbeddingCache | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.api_key = api_key
        self.dimension = dimension
        self.model = model
        self.timeout = timeout
        self.cache = cache if cache is not None else get_embedding_cache()
        self.batch_size = batch_size

        if not self.remote_enabled:
            logger.warning(
                "EMBEDDING_SERVICE_ENDPOINT/API_KEY not configured, using local embeddings only"
            )
        logger.info(
            "EmbeddingGenerator initialised (remote=%s, dimension=%d)",
            self.remote_enabled, self.dimension,
        )

    @classmethod
    def from_config(cls, cfg: dict | None = None, cache: EmbeddingCache | None = None) -> "EmbeddingGenerator":
        from polystore.config import embedding_settings

        settings = embedding_settings(cfg)
        return cls(
            endpoint=settings["endpoint"],
            api_key=settings["api_key"],
            dimension=settings["dimension"],
            model=settings["model"],
            timeout=settings["timeout"],
            cache=cache,
            batch_size=settings["batch_size"],
        )

    @property
    def remote_enabled(self) -> bool:
        return bool(self.endpoint and self.api_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, text: str) -> list[float]:
        """Embed one text. Cache first, then remote, then local fallback."""
        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Using cached embedding")
            return cached

        vector: list[float] | None = None
        if self.remote_enabled:
            try:
                vector = await self._remote_embed(text)
            except RemoteServiceError as e:
                logger.warning("Remote embedding failed, falling back to local: %s", e)
        if vector is None:
            vector = self.generate_locally(text)

        self.cache.set(text, vector)
        return vector

    async def generate_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed many texts.

        Cache hits are served directly; the misses go to the remote batch
        endpoint in a single call. If that call fails every miss is
        generated on its own through generate().
        """
        if not texts:
            return []

        results: list[list[float] | None] = [self.cache.get(t) for t in texts]
        missing = [i for i, v in enumerate(results) if v is None]

        if missing and self.remote_enabled:
            try:
                vectors = await self._remote_embed_batch([texts[i] for i in missing])
            except RemoteServiceError as e:
                logger.warning("Remote batch embedding failed, generating per item: %s", e)
            else:
                for i, vector in zip(missing, vectors):
                    self.cache.set(texts[i], vector)
                    results[i] = vector

        for i, vector in enumerate(results):
            if vector is None:
                results[i] = await self.generate(texts[i])

        return results  # type: ignore[return-value]

    async def generate_chunked(
        self,
        texts: Iterable[str],
        batch_size: int | None = None,
    ) -> list[list[float]]:
        """Embed a backlog in fixed-size batches to bound request size."""
        size = batch_size or self.batch_size
        out: list[list[float]] = []
        chunk: list[str] = []
        for text in texts:
            chunk.append(text)
            if len(chunk) >= size:
                out.extend(await self.generate_batch(chunk))
                chunk = []
        if chunk:
            out.extend(await self.generate_batch(chunk))
        return out

    def generate_locally(self, text: str) -> list[float]:
        """Deterministic character-code embedding; the zero vector for empty input."""
        vector = [0.0] * self.dimension
        tokens = (text or "").lower().split()[:MAX_LOCAL_TOKENS]
        for i, token in enumerate(tokens):
            width = len(token)
            for j, char in enumerate(token):
                position = (i * width + j) % self.dimension
                vector[position] += ord(char) / 255
        return normalize(vector)

    # ------------------------------------------------------------------
    # Remote endpoint
    # ------------------------------------------------------------------

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _post(self, url: str, payload: dict) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise RemoteServiceError(f"Embedding service timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"Embedding service unreachable: {e}") from e

        if resp.status_code >= 400:
            raise RemoteServiceError(
                f"Embedding service error: HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteServiceError(
                f"Embedding service returned non-JSON response: {resp.text[:200]}"
            ) from e

    async def _remote_embed(self, text: str) -> list[float]:
        data = await self._post(self.endpoint, {"text": text, "model": self.model})
        vector = _extract_single(data)
        return self._validated(vector)

    async def _remote_embed_batch(self, texts: list[str]) -> list[list[float]]:
        data = await self._post(f"{self.endpoint}/batch", {"texts": texts, "model": self.model})
        vectors = _extract_batch(data)
        if len(vectors) != len(texts):
            raise RemoteServiceError(
                f"Embedding batch returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return [self._validated(v) for v in vectors]

    def _validated(self, vector: Any) -> list[float]:
        if not isinstance(vector, list) or not all(
            isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector
        ):
            raise RemoteServiceError("Invalid embedding response format")
        if len(vector) != self.dimension:
            raise RemoteServiceError(
                f"Embedding service returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return [float(x) for x in vector]


def _extract_single(data: Any) -> Any:
    """Pull the vector out of {data: [{embedding}]}, {embedding} or {vector}."""
    if not isinstance(data, dict):
        raise RemoteServiceError("Invalid embedding response format")
    items = data.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict) and "embedding" in items[0]:
        return items[0]["embedding"]
    if "embedding" in data:
        return data["embedding"]
    if "vector" in data:
        return data["vector"]
    raise RemoteServiceError("Invalid embedding response format")


def _extract_batch(data: Any) -> list:
    """Pull the vectors out of {data: [{embedding}, ...]} or {embeddings: [...]}."""
    if isinstance(data, dict):
        items = data.get("data")
        if isinstance(items, list):
            try:
                return [item["embedding"] for item in items]
            except (KeyError, TypeError) as e:
                raise RemoteServiceError("Invalid embedding batch response format") from e
        if isinstance(data.get("embeddings"), list):
            return data["embeddings"]
    raise RemoteServiceError("Invalid embedding batch response format")
