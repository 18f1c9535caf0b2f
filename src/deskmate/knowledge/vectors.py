"""LanceDB-backed vector index for knowledge chunks.

Only the derived vectors live here; chunk text is owned by the document
store, which is why a full rebuild from the store is always possible.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

from deskmate.knowledge.embeddings import Embedder
from deskmate.knowledge.schema import (
    TABLE_NAME,
    Chunk,
    KnowledgeLayer,
    ReindexResult,
    SearchResult,
)

logger = logging.getLogger(__name__)

REINDEX_BATCH_SIZE = 50


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_clause(column: str, values: Iterable[str]) -> str:
    return f"{column} IN ({', '.join(_quote(v) for v in values)})"


class VectorIndex:
    """Similarity search over chunk embeddings."""

    def __init__(self, db_dir: Path, embedder: Embedder):
        self.db_dir = Path(db_dir)
        self.embedder = embedder
        self._db: Any = None

    def _connect(self) -> Any:
        if self._db is None:
            import lancedb

            self.db_dir.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_dir / "knowledge.lance"))
        return self._db

    def _open_table(self) -> Any | None:
        db = self._connect()
        try:
            return db.open_table(TABLE_NAME)
        except Exception:
            # Not created yet
            return None

    def embed(self, text: str) -> list[float]:
        return self.embedder.embed(text)

    def _records(self, chunks: list[Chunk]) -> list[dict[str, Any]]:
        vectors = self.embedder.embed_batch([c.text for c in chunks])
        records = []
        for chunk, vector in zip(chunks, vectors):
            chunk.vector = vector
            records.append({
                "id": chunk.id,
                "text": chunk.text,
                "source": chunk.source,
                "layer": chunk.layer.value,
                "vector": vector,
            })
        return records

    def upsert(self, chunks: list[Chunk]) -> int:
        """Embed chunks and write them, replacing rows with the same id.

        The table is created on the first write.
        """
        if not chunks:
            return 0
        records = self._records(chunks)
        table = self._open_table()
        if table is None:
            self._connect().create_table(TABLE_NAME, records, mode="overwrite")
        else:
            table.delete(_in_clause("id", [r["id"] for r in records]))
            table.add(records)
        return len(records)

    def remove(self, ids: list[str]) -> None:
        if not ids:
            return
        table = self._open_table()
        if table is not None:
            table.delete(_in_clause("id", ids))

    def query(
        self,
        vector: list[float],
        limit: int = 5,
        layers: Iterable[KnowledgeLayer] | None = None,
    ) -> list[SearchResult]:
        """Nearest chunks to `vector`, most similar first."""
        table = self._open_table()
        if table is None or limit <= 0:
            return []

        search = table.search(vector).limit(limit)
        if layers is not None:
            layer_values = [layer.value for layer in layers]
            if not layer_values:
                return []
            search = search.where(_in_clause("layer", layer_values), prefilter=True)

        return [
            SearchResult(
                chunk_id=row["id"],
                text=row["text"],
                source=row.get("source", ""),
                layer=KnowledgeLayer(row["layer"]),
                score=round(1.0 - row.get("_distance", 0.0), 4),
                origin="vector",
            )
            for row in search.to_list()
        ]

    def count(self) -> int:
        table = self._open_table()
        return table.count_rows() if table is not None else 0

    def reindex(self, chunks: list[Chunk]) -> ReindexResult:
        """Drop the vector table and rebuild it from the given chunks.

        A failing batch is logged and skipped, so the rebuilt table may be
        partial; the result's count reflects what was written.
        """
        db = self._connect()
        try:
            db.drop_table(TABLE_NAME)
        except Exception as e:
            logger.debug("No vector table to drop: %s", e)

        written = 0
        last_error: str | None = None
        table: Any = None
        for start in range(0, len(chunks), REINDEX_BATCH_SIZE):
            batch = chunks[start:start + REINDEX_BATCH_SIZE]
            try:
                records = self._records(batch)
                if table is None:
                    table = db.create_table(TABLE_NAME, records, mode="overwrite")
                else:
                    table.add(records)
                written += len(records)
            except Exception as e:
                last_error = str(e)
                logger.warning("Reindex batch at offset %d failed: %s", start, e)

        if chunks and written == 0:
            return ReindexResult(success=False, count=0, error=last_error)
        return ReindexResult(success=True, count=written, error=last_error)
