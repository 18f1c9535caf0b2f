"""Conversation summaries ("minutes") for Deskmate.

Each summary is one JSON file under ``<data>/summaries/``, named by its id.
Listing and search read the directory on every call; the number of
summaries is small.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

from deskmate.core.conversations import Conversation
from deskmate.core.llm import ChatModel
from deskmate.utils.paths import get_summaries_dir
from deskmate.utils.storage import write_json_atomic

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 4000
FALLBACK_SUMMARY_CHARS = 200

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class ConversationSummary:
    id: str
    conversation_id: str
    date: str  # YYYY-MM-DD
    timestamp: float
    title: str
    summary: str
    key_points: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    attachments: list[dict[str, str]] = field(default_factory=list)
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "date": self.date,
            "timestamp": self.timestamp,
            "title": self.title,
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "tags": list(self.tags),
            "attachments": list(self.attachments),
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ConversationSummary:
        return cls(
            id=d["id"],
            conversation_id=d.get("conversationId", ""),
            date=d.get("date", ""),
            timestamp=d.get("timestamp", 0.0),
            title=d.get("title", ""),
            summary=d.get("summary", ""),
            key_points=list(d.get("keyPoints") or []),
            tags=list(d.get("tags") or []),
            attachments=list(d.get("attachments") or []),
            message_count=d.get("messageCount", 0),
        )

    def matches(self, query: str) -> bool:
        needle = query.lower()
        haystack = [self.title, self.summary, *self.key_points, *self.tags]
        return any(needle in text.lower() for text in haystack)


def build_summary_prompt(transcript: str) -> str:
    return (
        "Write concise minutes for the following conversation.\n\n"
        f"Conversation:\n{transcript[:TRANSCRIPT_LIMIT]}\n\n"
        "Reply in JSON with these keys:\n"
        "{\n"
        '  "title": "topic of the conversation (a few words)",\n'
        '  "summary": "summary in 2-4 sentences",\n'
        '  "keyPoints": ["point 1", "point 2", "point 3"],\n'
        '  "tags": ["tag1", "tag2"]\n'
        "}"
    )


def parse_summary_reply(reply: str, default_title: str) -> dict[str, Any]:
    """Pull the summary fields out of a model reply.

    Replies without a JSON object fall back to the start of the reply as
    the summary text.
    """
    match = _JSON_OBJECT_RE.search(reply)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return {
                "title": str(data.get("title") or default_title),
                "summary": str(data.get("summary") or ""),
                "key_points": [str(p) for p in data.get("keyPoints") or []],
                "tags": [str(t) for t in data.get("tags") or []],
            }
    return {
        "title": default_title,
        "summary": reply.strip()[:FALLBACK_SUMMARY_CHARS],
        "key_points": ["Conversation record"],
        "tags": ["general"],
    }


class SummaryService:
    """Generates, stores and queries conversation summaries."""

    def __init__(self, data_dir: Path, model: ChatModel | None = None):
        self.summaries_dir = get_summaries_dir(Path(data_dir))
        self.model = model

    async def generate(self, conversation: Conversation) -> ConversationSummary:
        """Summarize a conversation with the model and save the result.

        A summary is saved even when the model call fails; it then only
        records the message count.
        """
        transcript = "\n\n".join(
            f"{'User' if m.role == 'user' else 'AI'}: {m.content}"
            for m in conversation.messages
        )
        attachments = [
            {"name": a.name, "type": a.type}
            for m in conversation.messages
            for a in m.attachments
        ]
        count = len(conversation.messages)

        try:
            if self.model is None:
                raise RuntimeError("no chat model configured")
            response = await self.model.invoke([
                {"role": "user", "content": build_summary_prompt(transcript)},
            ])
            fields = parse_summary_reply(response.content, conversation.title)
        except Exception as e:
            logger.warning("Summary generation failed for %s: %s", conversation.id, e)
            fields = {
                "title": conversation.title,
                "summary": f"Conversation with {count} messages",
                "key_points": [f"{count} messages in total"],
                "tags": ["conversation"],
            }

        now = time.time()
        summary = ConversationSummary(
            id=f"summary_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation.id,
            date=datetime.fromtimestamp(now).date().isoformat(),
            timestamp=now,
            attachments=attachments,
            message_count=count,
            **fields,
        )
        self.save(summary)
        logger.info("Summary generated: %s", summary.title)
        return summary

    def save(self, summary: ConversationSummary) -> None:
        write_json_atomic(self._path(summary.id), summary.to_dict())

    def _path(self, summary_id: str) -> Path:
        return self.summaries_dir / f"{summary_id}.json"

    def _load_all(self) -> list[ConversationSummary]:
        summaries = []
        for path in sorted(self.summaries_dir.glob("*.json")):
            try:
                summaries.append(ConversationSummary.from_dict(
                    json.loads(path.read_text(encoding="utf-8"))
                ))
            except (json.JSONDecodeError, OSError, KeyError) as e:
                logger.warning("Skipping unreadable summary %s: %s", path, e)
        return sorted(summaries, key=lambda s: s.timestamp, reverse=True)

    def all(self) -> list[ConversationSummary]:
        """Every summary, newest first."""
        return self._load_all()

    def get(self, summary_id: str) -> ConversationSummary | None:
        path = self._path(summary_id)
        if not path.exists():
            return None
        return ConversationSummary.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def delete(self, summary_id: str) -> bool:
        path = self._path(summary_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def by_date(self, day: str | date) -> list[ConversationSummary]:
        day = day.isoformat() if isinstance(day, date) else day
        return [s for s in self._load_all() if s.date == day]

    def by_range(self, start: str | date, end: str | date) -> list[ConversationSummary]:
        """Summaries dated between start and end, both inclusive."""
        start = start.isoformat() if isinstance(start, date) else start
        end = end.isoformat() if isinstance(end, date) else end
        return [s for s in self._load_all() if start <= s.date <= end]

    def grouped(self) -> dict[str, list[ConversationSummary]]:
        groups: dict[str, list[ConversationSummary]] = {}
        for summary in self._load_all():
            groups.setdefault(summary.date, []).append(summary)
        return groups

    def search(self, query: str) -> list[ConversationSummary]:
        if not query:
            return []
        return [s for s in self._load_all() if s.matches(query)]
