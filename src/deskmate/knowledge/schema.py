"""Record types for the layered knowledge store."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


TABLE_NAME = "chunks"


class KnowledgeLayer(Enum):
    """Independent partitions of the knowledge store."""

    CORE = "core"
    CONVERSATION = "conversation"
    GENERATED = "generated"


# Merge order for cross-layer results of equal score
LAYER_PRIORITY: tuple[KnowledgeLayer, ...] = (
    KnowledgeLayer.CORE,
    KnowledgeLayer.GENERATED,
    KnowledgeLayer.CONVERSATION,
)


def layer_rank(layer: KnowledgeLayer) -> int:
    return LAYER_PRIORITY.index(layer)


_KNOWN_METADATA_KEYS = ("source", "type", "tags", "createdAt", "updatedAt", "layer")


@dataclass
class ChunkMetadata:
    """Source metadata carried by every chunk."""

    source: str = ""
    type: str = "text"
    tags: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    layer: KnowledgeLayer = KnowledgeLayer.CORE
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "source": self.source,
            "type": self.type,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "layer": self.layer.value,
        }
        d.update(self.extra)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ChunkMetadata:
        now = time.time()
        return cls(
            source=d.get("source", "") or "",
            type=d.get("type", "text") or "text",
            tags=list(d.get("tags") or []),
            created_at=d.get("createdAt", now),
            updated_at=d.get("updatedAt", now),
            layer=KnowledgeLayer(d.get("layer", KnowledgeLayer.CORE.value)),
            extra={k: v for k, v in d.items() if k not in _KNOWN_METADATA_KEYS},
        )


@dataclass
class Chunk:
    """A bounded span of a source document stored as a retrievable unit."""

    id: str
    text: str
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    vector: list[float] | None = None

    @property
    def layer(self) -> KnowledgeLayer:
        return self.metadata.layer

    @property
    def source(self) -> str:
        return self.metadata.source

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Chunk:
        return cls(
            id=d["id"],
            text=d["text"],
            metadata=ChunkMetadata.from_dict(d.get("metadata", {})),
        )


@dataclass
class SearchResult:
    """A ranked retrieval hit from either search path."""

    chunk_id: str
    text: str
    source: str
    layer: KnowledgeLayer
    score: float
    origin: str = "lexical"  # "lexical" or "vector"
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.chunk_id,
            "text": self.text,
            "source": self.source,
            "layer": self.layer.value,
            "score": round(self.score, 4),
            "origin": self.origin,
        }


@dataclass
class ReindexResult:
    """Outcome of a full vector-table rebuild."""

    success: bool
    count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "count": self.count}
        if self.error:
            d["error"] = self.error
        return d
