"""Exception types for Deskmate.

Fatal errors (configuration, storage, model invocation) propagate to the
caller and end the current turn. Tool errors are soft: the agent loop turns
them into observations.
"""

from __future__ import annotations


class DeskmateError(Exception):
    """Base class for all Deskmate errors."""


class ConfigurationError(DeskmateError):
    """Required configuration (API key, model) is missing or invalid."""


class StorageError(DeskmateError):
    """A mutation could not be durably written to disk."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class ConversationNotFoundError(DeskmateError, KeyError):
    """No conversation exists with the given id."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return self.args[0]


class ModelInvocationError(DeskmateError):
    """The language model call itself failed (network, auth, rate limit)."""


class ToolError(DeskmateError):
    """A tool failed while executing."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Parsed tool arguments did not match the tool's schema."""
