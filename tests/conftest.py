"""Shared test fixtures for Deskmate."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

import pytest

from deskmate.config import DeskmateSettings
from deskmate.core.conversations import ConversationStore
from deskmate.core.errors import ModelInvocationError
from deskmate.core.llm import ModelResponse
from deskmate.knowledge.base import KnowledgeBase


class FakeChatModel:
    """Returns scripted responses in order and records every call.

    Once the script is exhausted the last response repeats. An Exception
    instance in the script is raised instead of returned.
    """

    def __init__(self, responses: list[str | Exception] | None = None):
        self.responses = list(responses or ["OK"])
        self.calls: list[list[dict[str, Any]]] = []

    async def invoke(self, messages: list[dict[str, Any]]) -> ModelResponse:
        self.calls.append([dict(m) for m in messages])
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return ModelResponse(content=response)


class FailingChatModel:
    async def invoke(self, messages: list[dict[str, Any]]) -> ModelResponse:
        raise ModelInvocationError("Model call failed: connection refused")


class FakeEmbedder:
    """Deterministic bag-of-words embedder over a small hashed space."""

    dims = 16

    def __init__(self):
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            vector = [0.0] * self.dims
            for word in text.lower().split():
                slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dims
                vector[slot] += 1.0
            norm = sum(v * v for v in vector) ** 0.5 or 1.0
            vectors.append([v / norm for v in vector])
        return vectors


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """An empty Deskmate data directory."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def settings() -> DeskmateSettings:
    """Lexical-only settings with a dummy API key."""
    return DeskmateSettings(api_key="test-key", chat_model="test-model")


@pytest.fixture
def knowledge(tmp_data_dir: Path, settings: DeskmateSettings) -> KnowledgeBase:
    return KnowledgeBase(tmp_data_dir, settings)


@pytest.fixture
def conversations(tmp_data_dir: Path) -> ConversationStore:
    return ConversationStore(tmp_data_dir)


@pytest.fixture
def fake_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def failing_model() -> FailingChatModel:
    return FailingChatModel()


@pytest.fixture
def scripted_model():
    """Factory for FakeChatModel with a given script."""
    return FakeChatModel


@pytest.fixture
def isolated_settings(tmp_path: Path, monkeypatch) -> Path:
    """Point the user-level settings file into tmp and clear env overrides."""
    user_path = tmp_path / "home" / "settings.json"
    monkeypatch.setattr("deskmate.config.get_user_settings_path", lambda: user_path)
    monkeypatch.delenv("DESKMATE_API_KEY", raising=False)
    monkeypatch.delenv("DESKMATE_BASE_URL", raising=False)
    return user_path
