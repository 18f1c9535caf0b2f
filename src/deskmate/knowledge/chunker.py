"""Fixed-size sliding-window chunking for the knowledge store.

Splits raw text into overlapping windows so that no span of interest is
lost at a chunk boundary. Also extracts YAML frontmatter from markdown
documents so that tags can be carried into chunk metadata.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml


CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200


@dataclass(frozen=True)
class TextSpan:
    """A window of the source text with its character offsets."""

    start: int
    end: int
    text: str


def split_text(
    text: str,
    size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[TextSpan]:
    """Split text into overlapping fixed-size windows.

    Adjacent windows share exactly `overlap` characters; the final window
    ends at the end of the text and may be shorter than `size`.

    Args:
        text: Raw document text
        size: Window length in characters
        overlap: Characters shared by adjacent windows

    Returns:
        List of TextSpan objects covering the text without gaps
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if overlap < 0 or overlap >= size:
        raise ValueError("overlap must be >= 0 and smaller than size")

    if not text:
        return []

    step = size - overlap
    spans: list[TextSpan] = []
    start = 0
    while True:
        end = min(start + size, len(text))
        spans.append(TextSpan(start=start, end=end, text=text[start:end]))
        if end >= len(text):
            break
        start += step
    return spans


def join_spans(spans: list[TextSpan]) -> str:
    """Reassemble the original text from overlapping spans."""
    if not spans:
        return ""
    parts = [spans[0].text]
    for prev, span in zip(spans, spans[1:]):
        parts.append(span.text[prev.end - span.start:])
    return "".join(parts)


def extract_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Extract YAML frontmatter and body from markdown content.

    Returns (frontmatter_dict, body_text).
    """
    if not content.startswith("---"):
        return {}, content

    parts = content.split("---", 2)
    if len(parts) < 3:
        return {}, content

    try:
        fm = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError:
        fm = {}
    if not isinstance(fm, dict):
        fm = {}

    body = parts[2].lstrip("\n")
    return fm, body


def frontmatter_tags(frontmatter: dict[str, Any]) -> list[str]:
    """Normalize the `tags` frontmatter field to a list of strings."""
    tags = frontmatter.get("tags", [])
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",")]
    return [str(t) for t in tags if str(t).strip()]
