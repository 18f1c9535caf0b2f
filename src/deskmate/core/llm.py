"""Chat model abstraction for Deskmate.

Supports OpenAI-compatible endpoints and Anthropic behind a single
``invoke(messages) -> ModelResponse`` call so the agent loop doesn't need
to know which provider is in use. Messages use the OpenAI shape; a
message's content is either a string or a list of ``text`` /
``image_url`` parts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from deskmate.config import DeskmateSettings, require_model_config
from deskmate.core.errors import ConfigurationError, ModelInvocationError


@dataclass
class ModelResponse:
    """Normalized model output."""
    content: str
    usage: dict[str, int] = field(default_factory=dict)


class ChatModel(Protocol):
    """Protocol for chat model backends."""

    async def invoke(self, messages: list[dict[str, Any]]) -> ModelResponse:
        ...


class OpenAIChatModel:
    """OpenAI-compatible chat completions via the openai SDK."""

    def __init__(self, settings: DeskmateSettings):
        self.settings = settings
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": self.settings.api_key}
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def invoke(self, messages: list[dict[str, Any]]) -> ModelResponse:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.settings.chat_model,
                messages=messages,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except Exception as e:
            raise ModelInvocationError(f"Model call failed: {e}") from e

        choice = response.choices[0] if response.choices else None
        content = (choice.message.content if choice else None) or ""
        usage = {}
        if getattr(response, "usage", None) is not None:
            usage = {
                "input_tokens": response.usage.prompt_tokens or 0,
                "output_tokens": response.usage.completion_tokens or 0,
            }
        return ModelResponse(content=content, usage=usage)


_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


class AnthropicChatModel:
    """Anthropic Messages API via the anthropic SDK.

    System messages are lifted into the ``system`` parameter and image
    data URLs are converted to base64 image blocks.
    """

    def __init__(self, settings: DeskmateSettings):
        self.settings = settings
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import AsyncAnthropic

            kwargs: dict[str, Any] = {"api_key": self.settings.api_key}
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    async def invoke(self, messages: list[dict[str, Any]]) -> ModelResponse:
        system_prompt, api_messages = self._translate_messages(messages)
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.settings.chat_model,
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "messages": api_messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        try:
            response = await client.messages.create(**kwargs)
        except Exception as e:
            raise ModelInvocationError(f"Model call failed: {e}") from e

        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "") == "text"
        )
        usage = {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        }
        return ModelResponse(content=text, usage=usage)

    @staticmethod
    def _translate_messages(
        messages: list[dict[str, Any]],
    ) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        result: list[dict[str, Any]] = []
        for msg in messages:
            role = msg["role"]
            content = msg["content"]
            if role == "system":
                system_parts.append(content if isinstance(content, str) else str(content))
                continue
            if isinstance(content, list):
                content = [AnthropicChatModel._translate_part(p) for p in content]
            # Anthropic requires alternating roles
            if result and result[-1]["role"] == role:
                prev = result[-1]["content"]
                if isinstance(prev, str):
                    prev = [{"type": "text", "text": prev}]
                if isinstance(content, str):
                    content = [{"type": "text", "text": content}]
                result[-1]["content"] = prev + content
                continue
            result.append({"role": role, "content": content})
        return "\n\n".join(system_parts), result

    @staticmethod
    def _translate_part(part: dict[str, Any]) -> dict[str, Any]:
        if part.get("type") != "image_url":
            return part
        url = part.get("image_url", {}).get("url", "")
        match = _DATA_URL_RE.match(url)
        if match:
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": match.group("media"),
                    "data": match.group("data"),
                },
            }
        return {"type": "image", "source": {"type": "url", "url": url}}


def create_chat_model(settings: DeskmateSettings) -> ChatModel:
    """Create the chat model for the configured provider.

    Raises ConfigurationError when the API key or model is missing.
    """
    require_model_config(settings)
    if settings.provider == "anthropic":
        return AnthropicChatModel(settings)
    if settings.provider == "openai":
        return OpenAIChatModel(settings)
    raise ConfigurationError(f"Unknown provider: {settings.provider}")
