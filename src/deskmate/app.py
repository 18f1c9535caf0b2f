"""Wiring of Deskmate's services for one data directory."""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from deskmate.config import DeskmateSettings, load_settings
from deskmate.core.agent import Agent
from deskmate.core.conversations import ConversationStore
from deskmate.core.errors import ConversationNotFoundError
from deskmate.core.llm import ChatModel, create_chat_model
from deskmate.core.summaries import SummaryService
from deskmate.knowledge.base import KnowledgeBase
from deskmate.knowledge.sync import FolderSync
from deskmate.utils.paths import get_data_dir


class Deskmate:
    """Holds the stores for a data directory and builds the rest on demand.

    The chat model is only created when something needs it, so knowledge
    and conversation commands work without an API key.
    """

    def __init__(self, data_dir: Path | None = None, settings: DeskmateSettings | None = None):
        self.data_dir = get_data_dir(data_dir)
        self.settings = settings or load_settings(self.data_dir)
        self.knowledge = KnowledgeBase(self.data_dir, self.settings)
        self.conversations = ConversationStore(self.data_dir)

    @cached_property
    def model(self) -> ChatModel:
        return create_chat_model(self.settings)

    @cached_property
    def agent(self) -> Agent:
        return Agent(self.settings, self.knowledge, self.conversations, model=self.model)

    @cached_property
    def summaries(self) -> SummaryService:
        """Summary store; attach ``model`` before generating new summaries."""
        return SummaryService(self.data_dir)

    def folder_sync(self, watch_paths: list[str | Path] | None = None) -> FolderSync:
        paths = watch_paths if watch_paths is not None else self.settings.watch_paths
        return FolderSync(self.knowledge, paths)

    def promote(self, conversation_id: str) -> int:
        """Save a conversation's transcript into the conversation layer."""
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        if not conversation.messages:
            return 0
        return self.knowledge.save_conversation(
            conversation.id, conversation.messages, conversation.title,
        )
