"""Tests for the command-line interface (commands that need no model)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from deskmate import __version__
from deskmate.cli import main, parse_config_value
from deskmate.config import DeskmateSettings
from deskmate.core.conversations import ConversationStore
from deskmate.knowledge.base import KnowledgeBase
from deskmate.knowledge.schema import KnowledgeLayer


@pytest.fixture(autouse=True)
def cli_env(isolated_settings, monkeypatch):
    # Wide enough that rich tables don't wrap cell text
    monkeypatch.setenv("COLUMNS", "200")


def run(data_dir: Path, *argv: str) -> int:
    return main(["--data-dir", str(data_dir), *argv])


def stored(data_dir: Path, layer: KnowledgeLayer) -> list:
    return KnowledgeBase(data_dir, DeskmateSettings()).store.get_by_layer(layer)


@pytest.fixture
def notes_file(tmp_path: Path) -> Path:
    path = tmp_path / "resume.md"
    path.write_text("Name: John Doe\nEmail: john@example.com")
    return path


class TestVersion:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestIngestAndSearch:
    def test_ingest(self, tmp_data_dir: Path, notes_file: Path, capsys):
        assert run(tmp_data_dir, "ingest", str(notes_file), "--tags", "cv, personal") == 0
        assert "Ingested resume.md: 1 chunks into the core layer" in capsys.readouterr().out
        chunk = stored(tmp_data_dir, KnowledgeLayer.CORE)[0]
        assert chunk.metadata.tags == ["cv", "personal"]

    def test_ingest_into_layer(self, tmp_data_dir: Path, notes_file: Path):
        assert run(tmp_data_dir, "ingest", str(notes_file), "--layer", "generated") == 0
        assert len(stored(tmp_data_dir, KnowledgeLayer.GENERATED)) == 1

    def test_ingest_missing(self, tmp_data_dir: Path, tmp_path: Path, capsys):
        assert run(tmp_data_dir, "ingest", str(tmp_path / "nope.md")) == 1
        assert "File not found" in capsys.readouterr().err

    def test_ingest_unsupported(self, tmp_data_dir: Path, tmp_path: Path, capsys):
        path = tmp_path / "scan.pdf"
        path.write_bytes(b"%PDF")
        assert run(tmp_data_dir, "ingest", str(path)) == 1
        assert "Unsupported file type: .pdf" in capsys.readouterr().err

    def test_search(self, tmp_data_dir: Path, notes_file: Path, capsys):
        run(tmp_data_dir, "ingest", str(notes_file))
        capsys.readouterr()
        assert run(tmp_data_dir, "search", "email") == 0
        out = capsys.readouterr().out
        assert "john@example.com" in out
        assert "lexical" in out

    def test_search_layer_filter(self, tmp_data_dir: Path, notes_file: Path, capsys):
        run(tmp_data_dir, "ingest", str(notes_file))
        capsys.readouterr()
        assert run(tmp_data_dir, "search", "email", "--layer", "conversation") == 0
        assert "No relevant information found." in capsys.readouterr().out

    def test_stats(self, tmp_data_dir: Path, notes_file: Path, capsys):
        run(tmp_data_dir, "ingest", str(notes_file))
        capsys.readouterr()
        assert run(tmp_data_dir, "stats") == 0
        assert "Total chunks: 1" in capsys.readouterr().out

    def test_reindex_needs_embedding_model(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "reindex") == 1
        assert "No embedding model" in capsys.readouterr().err


class TestConversations:
    def test_list_empty(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "conversations", "list") == 0
        assert "No conversations yet." in capsys.readouterr().out

    def test_show(self, tmp_data_dir: Path, capsys):
        store = ConversationStore(tmp_data_dir)
        conv = store.create("Groceries")
        store.add_message(conv.id, "user", "Buy oat milk")
        assert run(tmp_data_dir, "conversations", "show", conv.id) == 0
        out = capsys.readouterr().out
        assert "Groceries" in out
        assert "Buy oat milk" in out

    def test_show_unknown(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "conversations", "show", "missing") == 1
        assert "Conversation not found" in capsys.readouterr().err

    def test_missing_target(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "conversations", "delete") == 1
        assert "Usage" in capsys.readouterr().err

    def test_delete(self, tmp_data_dir: Path):
        conv = ConversationStore(tmp_data_dir).create()
        assert run(tmp_data_dir, "conversations", "delete", conv.id) == 0
        assert ConversationStore(tmp_data_dir).get(conv.id) is None

    def test_promote(self, tmp_data_dir: Path, capsys):
        store = ConversationStore(tmp_data_dir)
        conv = store.create("Dentist")
        store.add_message(conv.id, "user", "My dentist is Dr Smith")
        assert run(tmp_data_dir, "conversations", "promote", conv.id) == 0
        assert "Saved 1 chunks to the conversation layer" in capsys.readouterr().out
        assert len(stored(tmp_data_dir, KnowledgeLayer.CONVERSATION)) == 1

    def test_search(self, tmp_data_dir: Path, capsys):
        store = ConversationStore(tmp_data_dir)
        conv = store.create("Dentist")
        store.add_message(conv.id, "user", "My dentist is Dr Smith")
        assert run(tmp_data_dir, "conversations", "search", "smith") == 0
        assert conv.id in capsys.readouterr().out


class TestSync:
    def test_no_paths(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "sync") == 1
        assert "No folders to sync" in capsys.readouterr().err

    def test_sync_folder(self, tmp_data_dir: Path, tmp_path: Path, capsys):
        folder = tmp_path / "notes"
        folder.mkdir()
        (folder / "todo.txt").write_text("Call the plumber")
        assert run(tmp_data_dir, "sync", str(folder)) == 0
        assert "Added 1, modified 0, deleted 0, failed 0" in capsys.readouterr().out


class TestConfig:
    def test_set_and_get(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "config", "set", "max_iterations", "5") == 0
        saved = json.loads((tmp_data_dir / "settings.json").read_text())
        assert saved["max_iterations"] == 5
        capsys.readouterr()
        assert run(tmp_data_dir, "config", "get", "max_iterations") == 0
        assert capsys.readouterr().out.strip() == "5"

    def test_show_masks_api_key(self, tmp_data_dir: Path, capsys):
        run(tmp_data_dir, "config", "set", "api_key", "sk-secret")
        capsys.readouterr()
        assert run(tmp_data_dir, "config", "show") == 0
        out = capsys.readouterr().out
        assert "sk-secret" not in out
        assert json.loads(out)["api_key"] == "***"

    def test_unknown_key(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "config", "set", "colour", "blue") == 1
        assert "Unknown key: colour" in capsys.readouterr().err

    def test_invalid_value(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "config", "set", "max_iterations", "many") == 1
        assert "Invalid value for max_iterations" in capsys.readouterr().err

    def test_validation_failure_not_written(self, tmp_data_dir: Path, capsys):
        assert run(tmp_data_dir, "config", "set", "temperature", "5") == 1
        assert "temperature must be" in capsys.readouterr().err
        assert not (tmp_data_dir / "settings.json").exists()


class TestParseConfigValue:
    def test_types(self):
        assert parse_config_value("search_limit", "7") == 7
        assert parse_config_value("code_timeout", "2.5") == 2.5
        assert parse_config_value("auto_promote_conversations", "yes") is True
        assert parse_config_value("watch_paths", "~/a, ~/b") == ["~/a", "~/b"]
        assert parse_config_value("base_url", "") is None

    def test_bad_bool(self):
        with pytest.raises(ValueError):
            parse_config_value("auto_promote_conversations", "maybe")
