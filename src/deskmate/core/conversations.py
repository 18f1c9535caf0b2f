"""Conversation persistence for Deskmate.

All conversations live in one JSON array at
``<data>/conversations/conversations.json``, rewritten atomically on every
change. Messages are append-only. There is no process-wide "current"
conversation: callers hold on to the id they are working with.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from deskmate.core.errors import ConversationNotFoundError
from deskmate.utils.paths import get_conversations_dir
from deskmate.utils.storage import write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
PENDING_TITLE = "Generating title..."
ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Attachment:
    """A file or image sent along with a user message."""
    type: str  # "file" or "image"
    path: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "path": self.path, "name": self.name}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Attachment:
        return cls(type=d.get("type", "file"), path=d["path"], name=d.get("name") or Path(d["path"]).name)

    @property
    def is_image(self) -> bool:
        return self.type == "image" or self.type.startswith("image/")


@dataclass(frozen=True)
class Message:
    """A single conversation message. Never mutated once stored."""
    id: str
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)
    attachments: tuple[Attachment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.attachments:
            d["attachments"] = [a.to_dict() for a in self.attachments]
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Message:
        return cls(
            id=d.get("id") or uuid.uuid4().hex,
            role=d["role"],
            content=d.get("content", ""),
            timestamp=d.get("timestamp", 0.0),
            attachments=tuple(Attachment.from_dict(a) for a in d.get("attachments") or []),
        )


@dataclass
class Conversation:
    """A titled, ordered list of messages."""
    id: str
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Conversation:
        return cls(
            id=d["id"],
            title=d.get("title") or DEFAULT_TITLE,
            messages=[Message.from_dict(m) for m in d.get("messages", [])],
            created_at=d.get("createdAt", 0.0),
            updated_at=d.get("updatedAt", 0.0),
            metadata=d.get("metadata") or {},
        )

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def preview(self) -> str:
        """Brief text from the first user message."""
        for msg in self.messages:
            if msg.role == "user":
                text = msg.content[:100]
                if len(msg.content) > 100:
                    text += "..."
                return text
        return "(empty conversation)"


@dataclass
class ConversationMatch:
    conversation: Conversation
    message: Message


class ConversationStore:
    """Manages every conversation with whole-file JSON persistence."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.file_path = get_conversations_dir(self.data_dir) / "conversations.json"
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = self._load()

    def _load(self) -> dict[str, Conversation]:
        if not self.file_path.exists():
            return {}
        try:
            data = json.loads(self.file_path.read_text(encoding="utf-8"))
            conversations = [Conversation.from_dict(d) for d in data]
        except (json.JSONDecodeError, OSError, KeyError, TypeError) as e:
            logger.warning("Failed to load conversations from %s: %s", self.file_path, e)
            return {}
        return {c.id: c for c in conversations}

    def _save(self, conversations: dict[str, Conversation]) -> None:
        write_json_atomic(self.file_path, [c.to_dict() for c in conversations.values()])
        self._conversations = conversations

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def create(self, title: str | None = None) -> Conversation:
        now = time.time()
        conversation = Conversation(
            id=uuid.uuid4().hex,
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._save({**self._conversations, conversation.id: conversation})
        logger.debug("Created conversation %s", conversation.id)
        return conversation

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def list_all(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: list[Attachment] | tuple[Attachment, ...] | None = None,
    ) -> Message:
        """Append a message.

        The first user message of an untitled conversation switches its
        title to the pending placeholder until a real title is generated.
        """
        if role not in ROLES:
            raise ValueError(f"role must be one of: {', '.join(ROLES)}")

        with self._lock:
            current = self._require(conversation_id)
            message = Message(
                id=uuid.uuid4().hex,
                role=role,
                content=content,
                timestamp=time.time(),
                attachments=tuple(attachments or ()),
            )
            title = current.title
            if not current.messages and role == "user" and title == DEFAULT_TITLE:
                title = PENDING_TITLE
            updated = Conversation(
                id=current.id,
                title=title,
                messages=[*current.messages, message],
                created_at=current.created_at,
                updated_at=message.timestamp,
                metadata=current.metadata,
            )
            self._save({**self._conversations, updated.id: updated})
        return message

    def get_recent_messages(self, conversation_id: str, n: int = 10) -> list[Message]:
        """The last n messages in their original order."""
        conversation = self._require(conversation_id)
        if n <= 0:
            return []
        return list(conversation.messages[-n:])

    def update_title(self, conversation_id: str, title: str) -> None:
        with self._lock:
            current = self._require(conversation_id)
            updated = Conversation(
                id=current.id,
                title=title,
                messages=current.messages,
                created_at=current.created_at,
                updated_at=current.updated_at,
                metadata=current.metadata,
            )
            self._save({**self._conversations, updated.id: updated})
        logger.debug("Updated conversation title: %s", title)

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            if conversation_id not in self._conversations:
                return False
            remaining = {k: v for k, v in self._conversations.items() if k != conversation_id}
            self._save(remaining)
        return True

    def search(self, query: str, limit: int = 10) -> list[ConversationMatch]:
        """Case-insensitive substring search over every message."""
        needle = query.lower()
        if not needle:
            return []
        matches: list[ConversationMatch] = []
        for conversation in self.list_all():
            for message in conversation.messages:
                if needle in message.content.lower():
                    matches.append(ConversationMatch(conversation, message))
                    if len(matches) >= limit:
                        return matches
        return matches

    def transcript(self, conversation_id: str) -> str:
        """Plain-text transcript, one "User:"/"Assistant:" block per message."""
        conversation = self._require(conversation_id)
        return "\n\n".join(
            f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}"
            for m in conversation.messages
        )
