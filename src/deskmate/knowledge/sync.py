"""Folder sync: promote files from watched folders into the core layer.

Change detection compares SHA256 content hashes against a manifest saved
from the previous run, so only added, modified and deleted files are
touched. Turning a file into text is delegated to a TextExtractor.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from deskmate.knowledge.base import KnowledgeBase
from deskmate.knowledge.schema import KnowledgeLayer
from deskmate.utils.paths import get_sync_manifest_path

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt": "text", ".md": "markdown", ".markdown": "markdown"}

# Returns (text, type) for a file, or None when the file is not supported
TextExtractor = Callable[[Path], "tuple[str, str] | None"]


def extract_plain_text(path: Path) -> tuple[str, str] | None:
    """Default extractor: UTF-8 text and markdown files only."""
    doc_type = TEXT_SUFFIXES.get(path.suffix.lower())
    if doc_type is None:
        return None
    return path.read_text(encoding="utf-8", errors="replace"), doc_type


def compute_file_hash(path: Path) -> str:
    """Compute SHA256 hash of a file."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def find_changes(
    current: dict[str, str],
    previous: dict[str, str],
) -> tuple[list[str], list[str], list[str]]:
    """Find added, modified, and deleted files.

    Returns (added, modified, deleted) file lists.
    """
    added = [f for f in current if f not in previous]
    deleted = [f for f in previous if f not in current]
    modified = [
        f for f in current
        if f in previous and current[f] != previous[f]
    ]
    return added, modified, deleted


@dataclass
class SyncReport:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "modified": self.modified,
            "deleted": self.deleted,
            "failed": self.failed,
        }


class FolderSync:
    """Keeps the core layer in step with a set of watched folders."""

    def __init__(
        self,
        knowledge: KnowledgeBase,
        watch_paths: list[str | Path],
        extractor: TextExtractor = extract_plain_text,
    ):
        self.knowledge = knowledge
        self.watch_paths = [Path(p).expanduser() for p in watch_paths]
        self.extractor = extractor
        self.manifest_path = get_sync_manifest_path(knowledge.data_dir)

    def load_manifest(self) -> dict[str, str]:
        if not self.manifest_path.exists():
            return {}
        try:
            return json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}

    def save_manifest(self, manifest: dict[str, str]) -> None:
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        self.manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")

    def iter_files(self) -> list[Path]:
        files: set[Path] = set()
        for root in self.watch_paths:
            if root.is_file():
                files.add(root.resolve())
            elif root.is_dir():
                files.update(
                    p.resolve() for p in root.rglob("*")
                    if p.is_file() and not p.name.startswith(".")
                )
            else:
                logger.warning("Watch path does not exist: %s", root)
        return sorted(files)

    def compute_current_hashes(self) -> dict[str, str]:
        hashes = {}
        for path in self.iter_files():
            try:
                hashes[str(path)] = compute_file_hash(path)
            except OSError as e:
                logger.warning("Could not hash %s: %s", path, e)
        return hashes

    def is_stale(self) -> bool:
        added, modified, deleted = find_changes(self.compute_current_hashes(), self.load_manifest())
        return bool(added or modified or deleted)

    def sync(self) -> SyncReport:
        """Apply every change since the last sync to the core layer."""
        current = self.compute_current_hashes()
        previous = self.load_manifest()
        added, modified, deleted = find_changes(current, previous)
        report = SyncReport()
        manifest = dict(previous)

        for source in deleted:
            self.knowledge.store.delete_by_source(source, KnowledgeLayer.CORE)
            manifest.pop(source, None)
            report.deleted.append(source)

        for source in added + modified:
            try:
                extracted = self.extractor(Path(source))
            except Exception as e:
                logger.warning("Failed to extract text from %s: %s", source, e)
                report.failed[source] = str(e)
                continue
            if extracted is None:
                # Unsupported; remembered so it is not retried every run
                manifest[source] = current[source]
                continue
            text, doc_type = extracted
            self.knowledge.ingest(
                text,
                {"source": source, "type": doc_type, "title": Path(source).stem},
                KnowledgeLayer.CORE,
                replace=True,
            )
            manifest[source] = current[source]
            (report.added if source in added else report.modified).append(source)
            logger.info("Synced %s", source)

        self.save_manifest(manifest)
        return report
