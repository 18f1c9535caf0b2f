"""Embedding backends for the vector index.

Models named ``local:<name>`` run through sentence-transformers on this
machine; anything else goes to an OpenAI-compatible embeddings endpoint.
"""

from __future__ import annotations

from typing import Any, Protocol

from deskmate.config import DeskmateSettings


LOCAL_PREFIX = "local:"
EMBED_BATCH_SIZE = 64


class Embedder(Protocol):
    """Protocol for embedding providers."""

    def embed(self, text: str) -> list[float]:
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class OpenAIEmbedder:
    """Embeddings via an OpenAI-compatible API."""

    def __init__(self, model: str, api_key: str, base_url: str | None = None):
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import OpenAI

            kwargs: dict[str, Any] = {"api_key": self._api_key}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        client = self._get_client()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), EMBED_BATCH_SIZE):
            batch = texts[start:start + EMBED_BATCH_SIZE]
            response = client.embeddings.create(model=self.model, input=batch)
            # The API may return items out of order
            items = sorted(response.data, key=lambda item: item.index)
            vectors.extend(list(item.embedding) for item in items)
        return vectors


class SentenceTransformerEmbedder:
    """Embeddings computed locally with sentence-transformers."""

    def __init__(self, model: str = "all-MiniLM-L6-v2"):
        self.model = model
        self._encoder: Any = None

    def _get_encoder(self) -> Any:
        if self._encoder is None:
            from sentence_transformers import SentenceTransformer

            self._encoder = SentenceTransformer(self.model)
        return self._encoder

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._get_encoder().encode(texts).tolist()


def create_embedder(settings: DeskmateSettings) -> Embedder | None:
    """Create an embedder from settings, or None if no model is configured."""
    if not settings.has_embedding_model:
        return None
    model = settings.embedding_model.strip()
    if model.startswith(LOCAL_PREFIX):
        return SentenceTransformerEmbedder(model[len(LOCAL_PREFIX):])
    return OpenAIEmbedder(model, api_key=settings.api_key, base_url=settings.base_url)
