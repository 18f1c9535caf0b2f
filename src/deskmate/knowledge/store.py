"""Durable, layered chunk store.

Each knowledge layer is one JSON array on disk at
``<data>/knowledge/<layer>/index.json``. Every mutation rewrites the whole
layer file through a temp file and ``os.replace``; the in-memory copy is
only swapped in once the write has succeeded.

The lexical index is kept in step with the store. The vector index is
best-effort: failures there are logged and never fail a mutation.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any

from deskmate.knowledge.chunker import CHUNK_OVERLAP, CHUNK_SIZE, split_text
from deskmate.knowledge.lexical import LexicalIndex
from deskmate.knowledge.schema import (
    LAYER_PRIORITY,
    Chunk,
    ChunkMetadata,
    KnowledgeLayer,
)
from deskmate.knowledge.vectors import VectorIndex
from deskmate.utils.paths import get_layer_dir
from deskmate.utils.storage import write_json_atomic

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"

_METADATA_FIELDS = ("source", "type", "tags")


def _coerce_metadata(metadata: ChunkMetadata | dict[str, Any] | None) -> ChunkMetadata:
    if metadata is None:
        return ChunkMetadata()
    if isinstance(metadata, ChunkMetadata):
        return dataclasses.replace(metadata, tags=list(metadata.tags), extra=dict(metadata.extra))
    d = dict(metadata)
    d.pop("layer", None)
    return ChunkMetadata.from_dict(d)


class DocumentStore:
    """Chunked documents partitioned into independent knowledge layers."""

    def __init__(
        self,
        data_dir: Path,
        lexical_index: LexicalIndex,
        vector_index: VectorIndex | None = None,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
    ):
        self.data_dir = Path(data_dir)
        self.lexical = lexical_index
        self.vector = vector_index
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._locks = {layer: threading.Lock() for layer in KnowledgeLayer}
        self._layers: dict[KnowledgeLayer, list[Chunk]] = {
            layer: self._load_layer(layer) for layer in KnowledgeLayer
        }
        self.lexical.rebuild(self.get_all())

    # -- persistence --------------------------------------------------------

    def layer_path(self, layer: KnowledgeLayer) -> Path:
        return get_layer_dir(self.data_dir, layer.value) / INDEX_FILENAME

    def _load_layer(self, layer: KnowledgeLayer) -> list[Chunk]:
        path = self.layer_path(layer)
        if not path.exists():
            return []
        try:
            records = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return []

        chunks = []
        for record in records:
            try:
                chunk = Chunk.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed chunk in %s: %s", path, e)
                continue
            # The directory decides the layer, not the record
            chunk.metadata.layer = layer
            chunks.append(chunk)
        return chunks

    def _write_layer(self, layer: KnowledgeLayer, chunks: list[Chunk]) -> None:
        write_json_atomic(self.layer_path(layer), [c.to_dict() for c in chunks])

    def _commit(self, layer: KnowledgeLayer, chunks: list[Chunk]) -> None:
        """Persist then publish a new version of a layer. Caller holds the lock."""
        self._write_layer(layer, chunks)
        self._layers[layer] = chunks

    # -- index maintenance --------------------------------------------------

    def _index(self, chunks: list[Chunk]) -> None:
        for chunk in chunks:
            self.lexical.index(chunk)
        if self.vector is not None and chunks:
            try:
                self.vector.upsert(chunks)
            except Exception as e:
                logger.warning("Vector upsert failed for %d chunks: %s", len(chunks), e)

    def _unindex(self, chunk_ids: list[str]) -> None:
        for chunk_id in chunk_ids:
            self.lexical.remove(chunk_id)
        if self.vector is not None and chunk_ids:
            try:
                self.vector.remove(chunk_ids)
            except Exception as e:
                logger.warning("Vector removal failed for %d chunks: %s", len(chunk_ids), e)

    # -- chunking -----------------------------------------------------------

    def _make_chunks(
        self,
        text: str,
        metadata: ChunkMetadata,
        layer: KnowledgeLayer,
        created_at: float | None = None,
    ) -> list[Chunk]:
        now = time.time()
        chunks = []
        for span in split_text(text, self.chunk_size, self.chunk_overlap):
            if not span.text.strip():
                continue
            meta = dataclasses.replace(
                metadata,
                tags=list(metadata.tags),
                created_at=created_at if created_at is not None else now,
                updated_at=now,
                layer=layer,
                extra={**metadata.extra, "start": span.start, "end": span.end},
            )
            chunks.append(Chunk(id=uuid.uuid4().hex, text=span.text, metadata=meta))
        return chunks

    # -- mutations ----------------------------------------------------------

    def add(
        self,
        text: str,
        metadata: ChunkMetadata | dict[str, Any] | None = None,
        layer: KnowledgeLayer = KnowledgeLayer.CORE,
    ) -> int:
        """Chunk text into a layer. Returns the number of chunks written."""
        chunks = self._make_chunks(text, _coerce_metadata(metadata), layer)
        if not chunks:
            return 0
        with self._locks[layer]:
            self._commit(layer, self._layers[layer] + chunks)
        self._index(chunks)
        return len(chunks)

    def update(self, chunk_id: str, **fields: Any) -> bool:
        """Partially update a chunk's text and/or metadata.

        Keys other than ``text``, ``source``, ``type`` and ``tags`` are
        stored in the metadata's free-form extras.
        """
        if "layer" in fields or "id" in fields:
            raise ValueError("A chunk's id and layer cannot be updated")

        layer = self._find_layer(chunk_id)
        if layer is None:
            return False

        with self._locks[layer]:
            chunks = list(self._layers[layer])
            for i, chunk in enumerate(chunks):
                if chunk.id == chunk_id:
                    break
            else:
                return False

            meta_changes = {k: fields[k] for k in _METADATA_FIELDS if k in fields}
            extra = {
                k: v for k, v in fields.items()
                if k not in _METADATA_FIELDS and k != "text"
            }
            new_meta = dataclasses.replace(
                chunk.metadata,
                **meta_changes,
                updated_at=time.time(),
                extra={**chunk.metadata.extra, **extra},
            )
            text = fields.get("text", chunk.text)
            if not text or not text.strip():
                raise ValueError("Chunk text must be non-empty")
            updated = Chunk(id=chunk.id, text=text, metadata=new_meta)
            chunks[i] = updated
            self._commit(layer, chunks)

        self._index([updated])
        return True

    def delete(self, chunk_id: str) -> bool:
        layer = self._find_layer(chunk_id)
        if layer is None:
            return False
        with self._locks[layer]:
            remaining = [c for c in self._layers[layer] if c.id != chunk_id]
            if len(remaining) == len(self._layers[layer]):
                return False
            self._commit(layer, remaining)
        self._unindex([chunk_id])
        return True

    def clear(self, layer: KnowledgeLayer | None = None) -> int:
        """Remove every chunk from one layer, or from all layers."""
        layers = [layer] if layer is not None else list(KnowledgeLayer)
        removed = 0
        for target in layers:
            with self._locks[target]:
                ids = [c.id for c in self._layers[target]]
                self._commit(target, [])
            # Unindex per layer so a later failed write leaves no stale hits
            self._unindex(ids)
            removed += len(ids)
        return removed

    def delete_by_source(self, source: str, layer: KnowledgeLayer = KnowledgeLayer.CORE) -> int:
        with self._locks[layer]:
            doomed = [c.id for c in self._layers[layer] if c.source == source]
            if not doomed:
                return 0
            self._commit(layer, [c for c in self._layers[layer] if c.source != source])
        self._unindex(doomed)
        return len(doomed)

    def replace_source(
        self,
        text: str,
        metadata: ChunkMetadata | dict[str, Any],
        layer: KnowledgeLayer = KnowledgeLayer.CORE,
    ) -> int:
        """Re-chunk a whole source, discarding its previous chunks.

        The original creation time is inherited from the chunks replaced.
        """
        meta = _coerce_metadata(metadata)
        with self._locks[layer]:
            old = [c for c in self._layers[layer] if c.source == meta.source]
            created_at = min((c.metadata.created_at for c in old), default=None)
            chunks = self._make_chunks(text, meta, layer, created_at=created_at)
            kept = [c for c in self._layers[layer] if c.source != meta.source]
            if old or chunks:
                self._commit(layer, kept + chunks)
        self._unindex([c.id for c in old])
        self._index(chunks)
        return len(chunks)

    # -- queries ------------------------------------------------------------

    def _find_layer(self, chunk_id: str) -> KnowledgeLayer | None:
        for layer in LAYER_PRIORITY:
            if any(c.id == chunk_id for c in self._layers[layer]):
                return layer
        return None

    def get(self, chunk_id: str) -> Chunk | None:
        for layer in LAYER_PRIORITY:
            for chunk in self._layers[layer]:
                if chunk.id == chunk_id:
                    return chunk
        return None

    def get_by_layer(self, layer: KnowledgeLayer) -> list[Chunk]:
        return list(self._layers[layer])

    def get_all(self) -> list[Chunk]:
        """All chunks, in layer priority order."""
        result: list[Chunk] = []
        for layer in LAYER_PRIORITY:
            result.extend(self._layers[layer])
        return result

    def find_by_source(
        self, source: str, layer: KnowledgeLayer = KnowledgeLayer.CORE
    ) -> list[Chunk]:
        return [c for c in self._layers[layer] if c.source == source]

    def stats(self) -> dict[str, Any]:
        layers = {}
        for layer in LAYER_PRIORITY:
            chunks = self._layers[layer]
            layers[layer.value] = {
                "chunks": len(chunks),
                "sources": len({c.source for c in chunks}),
            }
        return {
            "layers": layers,
            "total_chunks": sum(v["chunks"] for v in layers.values()),
        }
