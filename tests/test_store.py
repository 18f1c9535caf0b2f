"""Tests for the layered document store."""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from deskmate.core.errors import StorageError
from deskmate.knowledge.lexical import LexicalIndex
from deskmate.knowledge.schema import KnowledgeLayer
from deskmate.knowledge.store import DocumentStore


@pytest.fixture
def store(tmp_data_dir: Path) -> DocumentStore:
    return DocumentStore(tmp_data_dir, LexicalIndex())


class TestAdd:
    def test_returns_chunk_count(self, store: DocumentStore):
        assert store.add("short note", {"source": "a.txt"}) == 1
        assert store.add("x" * 2500, {"source": "b.txt"}) == 3

    def test_empty_text_adds_nothing(self, store: DocumentStore):
        assert store.add("", {"source": "a.txt"}) == 0
        assert store.get_all() == []

    def test_stamps_metadata(self, store: DocumentStore):
        store.add("hello", {"source": "a.txt", "tags": ["x"]}, KnowledgeLayer.GENERATED)
        chunk = store.get_by_layer(KnowledgeLayer.GENERATED)[0]
        assert chunk.layer is KnowledgeLayer.GENERATED
        assert chunk.metadata.tags == ["x"]
        assert chunk.metadata.created_at > 0
        assert chunk.metadata.extra["start"] == 0
        assert chunk.metadata.extra["end"] == 5

    def test_persists_layer_file(self, store: DocumentStore, tmp_data_dir: Path):
        store.add("hello", {"source": "a.txt"})
        records = json.loads((tmp_data_dir / "knowledge" / "core" / "index.json").read_text())
        assert len(records) == 1
        assert set(records[0]) == {"id", "text", "metadata"}
        assert records[0]["metadata"]["source"] == "a.txt"

    def test_indexes_lexically(self, store: DocumentStore):
        store.add("Name: John Doe\nEmail: john@example.com", {"source": "resume.txt"})
        results = store.lexical.search("email")
        assert "john@example.com" in results[0].text


class TestPersistence:
    def test_reload_rebuilds_lexical_index(self, tmp_data_dir: Path):
        DocumentStore(tmp_data_dir, LexicalIndex()).add("persistent fact", {"source": "a.txt"})
        reloaded = DocumentStore(tmp_data_dir, LexicalIndex())
        assert len(reloaded.get_all()) == 1
        assert reloaded.lexical.search("persistent")

    def test_directory_decides_layer(self, tmp_data_dir: Path):
        layer_dir = tmp_data_dir / "knowledge" / "generated"
        layer_dir.mkdir(parents=True)
        (layer_dir / "index.json").write_text(json.dumps([
            {"id": "c1", "text": "hello", "metadata": {"source": "s", "layer": "core"}},
        ]))
        store = DocumentStore(tmp_data_dir, LexicalIndex())
        assert store.get("c1").layer is KnowledgeLayer.GENERATED

    def test_corrupt_layer_file_loads_empty(self, tmp_data_dir: Path):
        layer_dir = tmp_data_dir / "knowledge" / "core"
        layer_dir.mkdir(parents=True)
        (layer_dir / "index.json").write_text("{not json")
        store = DocumentStore(tmp_data_dir, LexicalIndex())
        assert store.get_all() == []

    def test_write_failure_leaves_state_unchanged(self, store: DocumentStore):
        store.add("first", {"source": "a.txt"})
        with patch("deskmate.utils.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                store.add("second", {"source": "b.txt"})
        assert [c.text for c in store.get_all()] == ["first"]
        assert store.lexical.search("second") == []


class TestUpdate:
    def test_updates_text_and_reindexes(self, store: DocumentStore):
        store.add("apples", {"source": "a.txt"})
        chunk_id = store.get_all()[0].id
        assert store.update(chunk_id, text="oranges") is True
        assert store.get(chunk_id).text == "oranges"
        assert store.lexical.search("apples") == []
        assert store.lexical.search("oranges")

    def test_extra_fields_go_to_extra(self, store: DocumentStore):
        store.add("draft", {"source": "a.txt"}, KnowledgeLayer.GENERATED)
        chunk_id = store.get_all()[0].id
        store.update(chunk_id, verified=True, tags=["checked"])
        chunk = store.get(chunk_id)
        assert chunk.metadata.extra["verified"] is True
        assert chunk.metadata.tags == ["checked"]

    def test_unknown_id(self, store: DocumentStore):
        assert store.update("missing", text="x") is False

    def test_layer_cannot_change(self, store: DocumentStore):
        store.add("text", {"source": "a.txt"})
        with pytest.raises(ValueError):
            store.update(store.get_all()[0].id, layer=KnowledgeLayer.GENERATED)

    def test_empty_text_rejected(self, store: DocumentStore):
        store.add("text", {"source": "a.txt"})
        with pytest.raises(ValueError):
            store.update(store.get_all()[0].id, text="   ")


class TestDelete:
    def test_delete(self, store: DocumentStore):
        store.add("apples", {"source": "a.txt"})
        chunk_id = store.get_all()[0].id
        assert store.delete(chunk_id) is True
        assert store.get(chunk_id) is None
        assert store.lexical.search("apples") == []
        assert store.delete(chunk_id) is False

    def test_clear_single_layer(self, store: DocumentStore):
        store.add("core fact", {"source": "a"})
        store.add("generated fact", {"source": "b"}, KnowledgeLayer.GENERATED)
        assert store.clear(KnowledgeLayer.CORE) == 1
        assert store.get_by_layer(KnowledgeLayer.CORE) == []
        assert len(store.get_by_layer(KnowledgeLayer.GENERATED)) == 1

    def test_clear_all(self, store: DocumentStore):
        store.add("core fact", {"source": "a"})
        store.add("generated fact", {"source": "b"}, KnowledgeLayer.GENERATED)
        assert store.clear() == 2
        assert store.get_all() == []
        assert len(store.lexical) == 0

    def test_clear_failure_keeps_index_in_step(self, store: DocumentStore):
        store.add("alpha core", {"source": "a"})
        store.add("alpha generated", {"source": "b"}, KnowledgeLayer.GENERATED)
        write_layer = store._write_layer

        def fail_on_generated(layer, chunks):
            if layer is KnowledgeLayer.GENERATED:
                raise StorageError("disk full")
            write_layer(layer, chunks)

        with patch.object(store, "_write_layer", side_effect=fail_on_generated):
            with pytest.raises(StorageError):
                store.clear()
        hits = store.lexical.search("alpha")
        assert [store.get(r.chunk_id).text for r in hits] == ["alpha generated"]
        assert store.get_by_layer(KnowledgeLayer.CORE) == []

    def test_delete_by_source(self, store: DocumentStore):
        store.add("x" * 1500, {"source": "big.txt"})
        store.add("other", {"source": "small.txt"})
        assert store.delete_by_source("big.txt") == 2
        assert [c.source for c in store.get_all()] == ["small.txt"]


class TestConcurrency:
    def test_parallel_adds_to_one_layer(self, store: DocumentStore, tmp_data_dir: Path):
        count = 20
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: store.add(f"note{i} body", {"source": f"n{i}.txt"}), range(count)))
        reloaded = DocumentStore(tmp_data_dir, LexicalIndex())
        assert sorted(c.source for c in reloaded.get_all()) == sorted(f"n{i}.txt" for i in range(count))
        assert len(store.lexical) == count
        for i in range(count):
            assert store.lexical.search(f"note{i}"), f"note{i} missing from index"


class TestReplaceSource:
    def test_replaces_chunks(self, store: DocumentStore):
        store.add("old content", {"source": "a.txt"})
        store.replace_source("new content", {"source": "a.txt"})
        texts = [c.text for c in store.find_by_source("a.txt")]
        assert texts == ["new content"]
        assert store.lexical.search("old") == []

    def test_inherits_creation_time(self, store: DocumentStore):
        store.add("old content", {"source": "a.txt"})
        created = store.get_all()[0].metadata.created_at
        store.replace_source("new content", {"source": "a.txt"})
        assert store.get_all()[0].metadata.created_at == created


class TestQueries:
    def test_get_all_in_priority_order(self, store: DocumentStore):
        store.add("conversation", {"source": "c"}, KnowledgeLayer.CONVERSATION)
        store.add("generated", {"source": "g"}, KnowledgeLayer.GENERATED)
        store.add("core", {"source": "k"}, KnowledgeLayer.CORE)
        assert [c.text for c in store.get_all()] == ["core", "generated", "conversation"]

    def test_stats(self, store: DocumentStore):
        store.add("one", {"source": "a"})
        store.add("two", {"source": "a"})
        store.add("three", {"source": "b"}, KnowledgeLayer.GENERATED)
        stats = store.stats()
        assert stats["total_chunks"] == 3
        assert stats["layers"]["core"] == {"chunks": 2, "sources": 1}
        assert stats["layers"]["generated"] == {"chunks": 1, "sources": 1}


class TestVectorDegradation:
    def test_vector_failure_does_not_fail_mutation(self, tmp_data_dir: Path):
        vector = MagicMock()
        vector.upsert.side_effect = RuntimeError("embedding endpoint down")
        vector.remove.side_effect = RuntimeError("embedding endpoint down")
        store = DocumentStore(tmp_data_dir, LexicalIndex(), vector)
        assert store.add("still saved", {"source": "a.txt"}) == 1
        assert store.lexical.search("saved")
        assert store.delete(store.get_all()[0].id) is True

    def test_vector_upsert_called(self, tmp_data_dir: Path):
        vector = MagicMock()
        store = DocumentStore(tmp_data_dir, LexicalIndex(), vector)
        store.add("hello", {"source": "a.txt"})
        vector.upsert.assert_called_once()
        assert vector.upsert.call_args[0][0][0].text == "hello"
