"""Hybrid lexical + vector retrieval.

Vector hits come first in similarity order, then lexical hits whose text
does not appear among the vector hits. Lexical hits with equal text
from different layers are all kept. The two score scales are not comparable, so no
re-scoring happens across paths.
"""

from __future__ import annotations

import logging
from typing import Iterable

from deskmate.config import RetrievalCapability
from deskmate.knowledge.lexical import LexicalIndex
from deskmate.knowledge.schema import KnowledgeLayer, SearchResult
from deskmate.knowledge.vectors import VectorIndex

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "No relevant documents found in knowledge base."


class HybridRetriever:
    """Combine lexical and (optionally) vector search results."""

    def __init__(
        self,
        lexical: LexicalIndex,
        vector: VectorIndex | None = None,
        capability: RetrievalCapability = RetrievalCapability.LEXICAL_ONLY,
    ):
        self.lexical = lexical
        self.vector = vector
        self.capability = capability

    @property
    def uses_vectors(self) -> bool:
        return self.capability is RetrievalCapability.HYBRID and self.vector is not None

    def search(
        self,
        query: str,
        limit: int = 5,
        layers: Iterable[KnowledgeLayer] | None = None,
    ) -> list[SearchResult]:
        """Search both paths and merge. Returns at most 2 * limit results."""
        if limit <= 0 or not query or not query.strip():
            return []
        layer_list = list(layers) if layers is not None else None

        vector_results: list[SearchResult] = []
        if self.uses_vectors:
            try:
                embedding = self.vector.embed(query)
                vector_results = self.vector.query(embedding, limit, layer_list)
            except Exception as e:
                logger.warning("Vector search failed, using keyword results only: %s", e)
                vector_results = []

        lexical_results = self.lexical.search(query, limit, layer_list)

        # Lexical hits are only checked against vector hits, not each other
        vector_texts = {r.text for r in vector_results}
        merged = list(vector_results)
        merged.extend(r for r in lexical_results if r.text not in vector_texts)

        return merged[:2 * limit]


def format_results(results: list[SearchResult]) -> str:
    """Render results as numbered document blocks for a prompt."""
    if not results:
        return NO_RESULTS_MESSAGE
    blocks = [
        f"[Document {i}: {r.source or 'unknown'}]\n{r.text}"
        for i, r in enumerate(results, start=1)
    ]
    return "\n\n---\n\n".join(blocks)
