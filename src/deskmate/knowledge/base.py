"""Knowledge base facade.

Wires the document store, lexical and vector indexes and the hybrid
retriever together from settings. Callers outside the knowledge package
should only need this class.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Iterable

from deskmate.config import (
    DeskmateSettings,
    RetrievalCapability,
    resolve_retrieval_capability,
)
from deskmate.knowledge.chunker import extract_frontmatter, frontmatter_tags
from deskmate.knowledge.embeddings import Embedder, create_embedder
from deskmate.knowledge.lexical import LexicalIndex
from deskmate.knowledge.retriever import HybridRetriever
from deskmate.knowledge.schema import (
    ChunkMetadata,
    KnowledgeLayer,
    ReindexResult,
    SearchResult,
)
from deskmate.knowledge.store import DocumentStore
from deskmate.knowledge.vectors import VectorIndex
from deskmate.utils.paths import get_lance_dir

logger = logging.getLogger(__name__)


class KnowledgeBase:
    """Layered knowledge store with hybrid retrieval."""

    def __init__(
        self,
        data_dir: Path,
        settings: DeskmateSettings,
        embedder: Embedder | None = None,
    ):
        self.data_dir = Path(data_dir)
        self.settings = settings
        self.capability = resolve_retrieval_capability(settings)

        self.vector: VectorIndex | None = None
        if self.capability is RetrievalCapability.HYBRID:
            embedder = embedder or create_embedder(settings)
            if embedder is not None:
                self.vector = VectorIndex(get_lance_dir(self.data_dir), embedder)

        self.lexical = LexicalIndex()
        self.store = DocumentStore(self.data_dir, self.lexical, self.vector)
        self.retriever = HybridRetriever(self.lexical, self.vector, self.capability)

    def ingest(
        self,
        raw_text: str,
        metadata: ChunkMetadata | dict[str, Any] | None = None,
        layer: KnowledgeLayer = KnowledgeLayer.CORE,
        replace: bool = False,
    ) -> int:
        """Add a document's text to a layer.

        YAML frontmatter, if present, is stripped and its tags are merged
        into the metadata. With ``replace=True`` any chunks already stored
        for the same source are discarded first.

        Returns:
            Number of chunks written
        """
        meta = dict(metadata.to_dict() if isinstance(metadata, ChunkMetadata) else metadata or {})
        frontmatter, body = extract_frontmatter(raw_text)
        if frontmatter:
            tags = list(meta.get("tags") or [])
            for tag in frontmatter_tags(frontmatter):
                if tag not in tags:
                    tags.append(tag)
            meta["tags"] = tags
            if "title" in frontmatter and "title" not in meta:
                meta["title"] = str(frontmatter["title"])

        if replace and meta.get("source"):
            return self.store.replace_source(body, meta, layer)
        return self.store.add(body, meta, layer)

    def search(
        self,
        query: str,
        limit: int | None = None,
        layers: Iterable[KnowledgeLayer] | None = None,
    ) -> list[SearchResult]:
        return self.retriever.search(query, limit or self.settings.search_limit, layers)

    def reindex(self) -> ReindexResult:
        """Rebuild the vector table from every stored chunk."""
        if self.vector is None:
            return ReindexResult(success=False, error="No embedding model configured")
        chunks = self.store.get_all()
        result = self.vector.reindex(chunks)
        logger.info("Reindexed %d/%d chunks", result.count, len(chunks))
        return result

    def stats(self) -> dict[str, Any]:
        stats = self.store.stats()
        stats["capability"] = self.capability.value
        stats["data_dir"] = str(self.data_dir)
        if self.vector is not None:
            try:
                stats["vectors"] = self.vector.count()
            except Exception as e:
                logger.warning("Could not count vectors: %s", e)
                stats["vectors"] = None
        return stats

    def save_conversation(
        self,
        conversation_id: str,
        messages: Iterable[Any],
        title: str | None = None,
    ) -> int:
        """Promote a conversation transcript into the conversation layer.

        Chunks are keyed on the conversation id, so re-promoting replaces the
        earlier copy and conversations sharing a title stay separate.
        """
        message_list = list(messages)
        content = "\n\n".join(
            f"{_field(m, 'role')}: {_field(m, 'content')}" for m in message_list
        )
        title = title or "Conversation"
        meta = {
            "source": f"conversation:{conversation_id}",
            "type": "conversation",
            "tags": ["chat", "history"],
            "conversation_id": conversation_id,
            "message_count": len(message_list),
            "title": title,
        }
        return self.store.replace_source(content, meta, KnowledgeLayer.CONVERSATION)

    def save_generated_content(
        self,
        title: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Store model-generated content as unverified. Returns its document id."""
        metadata = dict(metadata or {})
        document_id = uuid.uuid4().hex
        tags = ["ai-generated", *metadata.pop("tags", [])]
        meta = {
            **metadata,
            "source": metadata.get("source") or title,
            "type": "generated",
            "tags": tags,
            "title": title,
            "verified": False,
            "document_id": document_id,
        }
        self.store.add(content, meta, KnowledgeLayer.GENERATED)
        return document_id

    def verify_generated_content(self, document_id: str) -> bool:
        """Mark every chunk of a generated document as verified."""
        chunk_ids = [
            c.id for c in self.store.get_by_layer(KnowledgeLayer.GENERATED)
            if c.metadata.extra.get("document_id") == document_id
        ]
        for chunk_id in chunk_ids:
            self.store.update(chunk_id, verified=True)
        return bool(chunk_ids)


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name, "")
    return getattr(message, name, "")
