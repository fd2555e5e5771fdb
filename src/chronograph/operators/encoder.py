"""Encoder - text embeddings through the cache, then Ollama.

Every lookup consults the EmbeddingCache first. Only the misses of a batch
are sent to the embedding collaborator, in one request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import ollama

from src.chronograph.errors import CollaboratorError
from src.chronograph.operators.embedding_cache import EmbeddingCache, EmbeddingCacheConfig
from src.chronograph.retry import RetryPolicy, call_with_retries

EmbedCallback = Callable[[list[str]], Awaitable[list[list[float]]]]


@dataclass
class EncoderConfig:
    """Configuration for the Encoder module."""
    embedding_model: str = "bge-m3:latest"
    embedding_dim: int = 1024
    ollama_host: str | None = None  # None = default localhost:11434
    ollama_timeout: float = 60.0
    max_content_length: int = 8000
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(timeout=60.0))


class Encoder:
    """Turns text into embedding vectors.

    Uses the Ollama Python library unless an external batch callback is set.
    """

    def __init__(
        self,
        config: EncoderConfig | None = None,
        cache: EmbeddingCache | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config or EncoderConfig()
        self.cache = cache or EmbeddingCache(EmbeddingCacheConfig())
        self._log = logger or logging.getLogger(__name__)
        self._client: ollama.AsyncClient | None = None
        self._embed_callback: EmbedCallback | None = None

    def set_embed_callback(self, callback: EmbedCallback) -> None:
        """Set external batch embedding callback (overrides Ollama)."""
        self._embed_callback = callback

    async def close(self) -> None:
        self._client = None

    async def embed(self, text: str) -> list[float]:
        """Embedding for one text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embeddings for many texts, in input order.

        Raises CollaboratorError when the collaborator keeps failing.
        """
        if not texts:
            return []
        keys = [self._key(t) for t in texts]
        results: dict[str, list[float]] = {}
        missing: list[str] = []
        for key in keys:
            if key in results or key in missing:
                continue
            cached = self.cache.get(key)
            if cached is not None:
                results[key] = cached
            else:
                missing.append(key)

        if missing:
            self._log.debug("Embedding %d uncached texts (%d cached)", len(missing), len(results))
            vectors = await call_with_retries(
                "embed",
                lambda: self._embed_remote(missing),
                self.config.retry,
                logger=self._log,
            )
            if len(vectors) != len(missing):
                raise CollaboratorError(
                    f"Embedding collaborator returned {len(vectors)} vectors for {len(missing)} texts",
                    task="embed",
                )
            for key, vector in zip(missing, vectors):
                self.cache.set(key, vector)
                results[key] = vector

        return [results[key] for key in keys]

    def _key(self, text: str) -> str:
        key = text[: self.config.max_content_length]
        if not key.strip():
            raise ValueError("Cannot embed empty text")
        return key

    async def _embed_remote(self, texts: list[str]) -> list[list[float]]:
        if self._embed_callback is not None:
            return await self._embed_callback(texts)
        return await self._ollama_embed_batch(texts)

    async def _ollama_embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self._client is None:
            self._client = ollama.AsyncClient(
                host=self.config.ollama_host,
                timeout=self.config.ollama_timeout,
            )
        response = await self._client.embed(model=self.config.embedding_model, input=texts)
        embeddings = response["embeddings"] if response else None
        if not embeddings:
            raise CollaboratorError("Ollama returned no embeddings", task="embed")
        actual_dim = len(embeddings[0])
        if actual_dim != self.config.embedding_dim:
            self._log.info("Updating embedding_dim: %d -> %d", self.config.embedding_dim, actual_dim)
            self.config.embedding_dim = actual_dim
        return [list(v) for v in embeddings]
