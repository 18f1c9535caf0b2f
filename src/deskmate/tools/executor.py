"""Tool executor for Deskmate.

Dispatches validated tool calls to their handlers and turns every failure
into an observation string, so a broken tool never ends the agent's turn.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from deskmate.config import DeskmateSettings
from deskmate.core.errors import ToolError, ToolValidationError
from deskmate.knowledge.base import KnowledgeBase
from deskmate.tools.code_tool import handle_run_code
from deskmate.tools.file_tool import handle_read_file
from deskmate.tools.image_tool import handle_generate_image
from deskmate.tools.knowledge_tool import handle_search_knowledge_base
from deskmate.tools.literature_tool import handle_search_pubmed, handle_search_pubmed_full
from deskmate.tools.plan_tool import handle_create_plan, handle_mark_step_completed
from deskmate.tools.registry import ToolArgs, ToolCall, ToolRegistry

logger = logging.getLogger(__name__)

SyncHandler = Callable[[ToolArgs], str]
AsyncHandler = Callable[[ToolArgs], Awaitable[str]]


class ToolExecutor:
    """Runs tool calls and reports their output as text."""

    def __init__(self, registry: ToolRegistry | None = None):
        self.registry = registry or ToolRegistry()
        self._handlers: dict[str, SyncHandler] = {}
        self._async_handlers: dict[str, AsyncHandler] = {}

    def register_handler(self, tool_name: str, handler: SyncHandler) -> None:
        """Register a blocking handler; it runs in a worker thread."""
        self._check_known(tool_name)
        self._handlers[tool_name] = handler

    def register_async_handler(self, tool_name: str, handler: AsyncHandler) -> None:
        """Register a coroutine handler. Preferred over a sync one."""
        self._check_known(tool_name)
        self._async_handlers[tool_name] = handler

    def _check_known(self, tool_name: str) -> None:
        if tool_name not in self.registry:
            raise ValueError(f"Cannot register handler for unknown tool: {tool_name}")

    def has_handler(self, tool_name: str) -> bool:
        return tool_name in self._handlers or tool_name in self._async_handlers

    async def execute(self, call: ToolCall) -> str:
        """Run a validated call. Never raises for tool failures."""
        try:
            if call.name in self._async_handlers:
                result = await self._async_handlers[call.name](call.args)
            elif call.name in self._handlers:
                result = await asyncio.to_thread(self._handlers[call.name], call.args)
            else:
                return f"Error: No handler registered for tool: {call.name}"
        except ToolError as e:
            logger.warning("Tool %s failed: %s", call.name, e)
            return f"Error: {e}"
        except Exception as e:
            logger.exception("Tool %s failed", call.name)
            return f"Error: {call.name} failed: {e}"
        return result if isinstance(result, str) else str(result)

    async def dispatch(
        self,
        tool_name: str,
        args: Any,
        on_validated: Callable[[ToolCall], None] | None = None,
    ) -> str:
        """Validate raw arguments, then execute.

        Validation failures come back as observations too. ``on_validated``
        sees the call after validation and before the handler runs.
        """
        try:
            call = self.registry.validate(tool_name, args)
        except ToolValidationError as e:
            return f"Error: {e}"
        if on_validated is not None:
            on_validated(call)
        return await self.execute(call)


def create_tool_executor(
    knowledge: KnowledgeBase,
    settings: DeskmateSettings,
    data_dir: Path,
    registry: ToolRegistry | None = None,
) -> ToolExecutor:
    """Build an executor with every built-in tool handler registered."""
    executor = ToolExecutor(registry)
    executor.register_handler("read_file", handle_read_file)
    executor.register_handler("create_plan", handle_create_plan)
    executor.register_handler("mark_step_completed", handle_mark_step_completed)
    executor.register_handler(
        "search_knowledge_base",
        functools.partial(handle_search_knowledge_base, knowledge=knowledge),
    )
    executor.register_handler(
        "run_code",
        functools.partial(handle_run_code, timeout=settings.code_timeout),
    )
    executor.register_handler(
        "generate_image",
        functools.partial(
            handle_generate_image,
            settings=settings,
            output_dir=Path(data_dir) / "images",
        ),
    )
    executor.register_handler("search_pubmed", handle_search_pubmed)
    executor.register_handler("search_pubmed_full", handle_search_pubmed_full)
    return executor
