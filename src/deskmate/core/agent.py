"""Agent loop for Deskmate.

One call to ``Agent.run`` handles one user turn: gather context, build the
prompt, then alternate between invoking the model and dispatching the tool
calls it asks for until it gives a final answer or the iteration budget
runs out.

There are two personas. CHAT is a plain assistant with no tools; when it
replies with the escalation sentinel the turn moves to AGENT, the
tool-using persona, with the same input. Both share one budget of model
invocations.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from deskmate.config import DeskmateSettings
from deskmate.core.conversations import Attachment, ConversationStore, Message
from deskmate.core.events import AgentStep, StepCallback, StepType
from deskmate.core.llm import ChatModel, create_chat_model
from deskmate.core.parsing import parse_tool_call
from deskmate.knowledge.base import KnowledgeBase
from deskmate.knowledge.retriever import format_results
from deskmate.knowledge.schema import SearchResult
from deskmate.knowledge.sync import extract_plain_text
from deskmate.tools.executor import ToolExecutor, create_tool_executor
from deskmate.tools.registry import ToolCall

logger = logging.getLogger(__name__)

__all__ = [
    "Agent",
    "AgentMode",
    "AgentResult",
    "AgentState",
    "AgentStep",
    "StepType",
    "ESCALATION_SENTINEL",
    "ITERATION_LIMIT_MESSAGE",
]

ITERATION_LIMIT_MESSAGE = "I'm sorry, I couldn't complete the task within the iteration limit."
ESCALATION_SENTINEL = "[NEEDS_AGENT_CAPABILITIES]"
TITLE_MAX_CHARS = 60
FALLBACK_TITLE_CHARS = 40

_THINKING_RE = re.compile(r"<thinking>([\s\S]*?)</thinking>", re.IGNORECASE)


class AgentMode(Enum):
    """Which persona handles the turn."""

    CHAT = "chat"
    AGENT = "agent"


class AgentState(Enum):
    GATHER_CONTEXT = "gather_context"
    BUILD_PROMPT = "build_prompt"
    INVOKE_MODEL = "invoke_model"
    PARSE_OUTPUT = "parse_output"
    DISPATCH_TOOL = "dispatch_tool"
    APPEND_OBSERVATION = "append_observation"
    FINAL_ANSWER = "final_answer"
    ITERATION_LIMIT_EXCEEDED = "iteration_limit_exceeded"


@dataclass
class AgentResult:
    """Outcome of one user turn."""

    text: str
    state: AgentState
    iterations: int
    mode: AgentMode
    escalated: bool = False


@dataclass
class GatheredContext:
    documents: list[SearchResult] = field(default_factory=list)
    history: list[Message] = field(default_factory=list)

    def knowledge_block(self) -> str:
        if not self.documents:
            return ""
        return format_results(self.documents)


# Reads a non-image attachment as text
AttachmentExtractor = Callable[[Attachment], str]


def extract_attachment_text(attachment: Attachment) -> str:
    """Default attachment reader: plain text and markdown only."""
    path = Path(attachment.path)
    extracted = extract_plain_text(path)
    if extracted is None:
        return f"Unsupported file type: {path.suffix}\nFile: {attachment.name}"
    return extracted[0].strip()


def build_chat_system_prompt(agent_name: str) -> str:
    """System prompt for the lightweight, tool-less persona."""
    parts = [
        f"You are {agent_name}, a capable personal assistant.",
        "Answer directly, naturally and concisely. Keep the thread of the",
        "conversation and refer back to earlier messages when it helps.",
        "",
        "Language: always reply in the same language the user writes in.",
        "",
        "Before answering, write a short <thinking>...</thinking> block with",
        "your reading of the user's intent.",
        "",
        "Reference documents from the user's knowledge base may be included",
        "with the question. Use them only when they answer it, and state the",
        "facts without citing the document. Otherwise rely on general knowledge.",
        "",
        "If the request needs capabilities you do not have here (reading",
        "local files, searching the personal knowledge base, searching PubMed,",
        "running code, generating images, multi-step planning), do not refuse.",
        "Reply with exactly and only this string:",
        ESCALATION_SENTINEL,
    ]
    return "\n".join(parts)


def build_agent_system_prompt(agent_name: str, tool_list: str) -> str:
    """System prompt for the tool-using persona."""
    parts = [
        f"You are {agent_name}, an agent that solves tasks by reasoning and using tools.",
        "Work out what the user actually wants, decide whether tools are",
        "needed, use them precisely, then combine their output into a clear answer.",
        "",
        "Language: always reply in the same language the user writes in.",
        "",
        "Before every response, tool call or final answer, write a",
        "<thinking>...</thinking> block explaining your choice.",
        "",
        "Available tools:",
        tool_list,
        "",
        "Rules:",
        "- Questions about the user's own notes, documents or history: use search_knowledge_base.",
        "- General knowledge questions: answer directly without searching.",
        "- If a search finds nothing relevant, answer from general knowledge instead.",
        "- Use as few steps as possible.",
        "",
        "To call a tool, output exactly one JSON block:",
        "```json",
        '{"tool": "tool_name", "args": {...}}',
        "```",
        "",
        "To give the final answer, write plain text with no JSON.",
    ]
    return "\n".join(parts)


def build_title_prompt(user_message: str, assistant_response: str) -> str:
    return (
        "Based on this conversation, generate a short title (3-6 words) "
        "that captures the main topic.\n\n"
        f"User: {user_message}\n"
        f"Assistant: {assistant_response}\n\n"
        "Reply with ONLY the title.\n\nTitle:"
    )


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0].strip() if raw.strip() else ""
    title = re.sub(r'^["\']|["\']$', "", title)
    return title[:TITLE_MAX_CHARS].strip()


def fallback_title(user_message: str) -> str:
    title = user_message[:FALLBACK_TITLE_CHARS]
    if len(user_message) > FALLBACK_TITLE_CHARS:
        title += "..."
    return title


class Agent:
    """Deskmate agent: two personas over one bounded tool-use loop."""

    def __init__(
        self,
        settings: DeskmateSettings,
        knowledge: KnowledgeBase,
        conversations: ConversationStore,
        model: ChatModel | None = None,
        executor: ToolExecutor | None = None,
        attachment_extractor: AttachmentExtractor = extract_attachment_text,
    ):
        self.settings = settings
        self.knowledge = knowledge
        self.conversations = conversations
        self.model = model or create_chat_model(settings)
        self.executor = executor or create_tool_executor(knowledge, settings, knowledge.data_dir)
        self.registry = self.executor.registry
        self.attachment_extractor = attachment_extractor
        self.state = AgentState.FINAL_ANSWER
        self._background: set[asyncio.Task] = set()

    def _transition(self, state: AgentState) -> None:
        logger.debug("Agent state %s -> %s", self.state.value, state.value)
        self.state = state

    async def run(
        self,
        conversation_id: str,
        user_input: str,
        attachments: list[Attachment] | None = None,
        mode: AgentMode = AgentMode.AGENT,
        on_step: StepCallback | None = None,
    ) -> AgentResult:
        """Handle one user turn and persist both sides of the exchange.

        Raises:
            ModelInvocationError: the model call failed
            ConversationNotFoundError: unknown conversation id
        """
        emit = on_step or (lambda step: None)
        attachments = list(attachments or [])

        conversation = self.conversations.get(conversation_id)
        is_first_exchange = conversation is not None and not conversation.messages
        await asyncio.to_thread(
            self.conversations.add_message, conversation_id, "user", user_input, attachments,
        )

        self._transition(AgentState.GATHER_CONTEXT)
        context = await self._gather_context(conversation_id, user_input, skip_knowledge=bool(attachments))

        self._transition(AgentState.BUILD_PROMPT)
        user_content = await self._build_user_content(user_input, attachments, context)

        iterations = 0
        escalated = False
        current_mode = mode
        while True:
            if current_mode is AgentMode.CHAT:
                text, iterations = await self._run_chat(context, user_content, iterations, emit)
                if ESCALATION_SENTINEL in text and iterations < self.settings.max_iterations:
                    logger.info("Escalating to agent mode")
                    emit(AgentStep.thinking("Switching to Agent mode for advanced capabilities..."))
                    current_mode = AgentMode.AGENT
                    escalated = True
                    self._transition(AgentState.BUILD_PROMPT)
                    continue
                state = AgentState.FINAL_ANSWER
            else:
                text, state, iterations = await self._run_agent(context, user_content, iterations, emit)
            break

        self._transition(state)
        await asyncio.to_thread(self.conversations.add_message, conversation_id, "assistant", text)

        if is_first_exchange:
            self._schedule_title(conversation_id, user_input, text)
        if self.settings.auto_promote_conversations:
            await self._promote_quietly(conversation_id)

        return AgentResult(
            text=text,
            state=state,
            iterations=iterations,
            mode=current_mode,
            escalated=escalated,
        )

    # -- context ------------------------------------------------------------

    async def _gather_context(
        self,
        conversation_id: str,
        query: str,
        skip_knowledge: bool,
    ) -> GatheredContext:
        documents: list[SearchResult] = []
        if skip_knowledge:
            logger.debug("Skipping knowledge search: turn has attachments")
        else:
            try:
                documents = await asyncio.to_thread(
                    self.knowledge.search, query, self.settings.search_limit,
                )
            except Exception as e:
                logger.warning("Knowledge base search failed: %s", e)

        window = max(self.settings.history_window, self.settings.context_window)
        recent = self.conversations.get_recent_messages(conversation_id, window + 1)
        # The last message is the turn being answered
        history = [m for m in recent[:-1] if m.content.strip()]
        return GatheredContext(documents=documents, history=history)

    async def _build_user_content(
        self,
        user_input: str,
        attachments: list[Attachment],
        context: GatheredContext,
    ) -> str | list[dict[str, Any]]:
        text = user_input
        knowledge = context.knowledge_block()
        if knowledge:
            text = f"Reference Documents:\n{knowledge}\n\nUser Question: {user_input}"

        files = [a for a in attachments if not a.is_image]
        if files:
            # gather() keeps attachment order regardless of completion order
            contents = await asyncio.gather(
                *(self._extract_attachment(a) for a in files)
            )
            for attachment, content in zip(files, contents):
                text += f"\n\n[Attachment: {attachment.name}]\n{content}"

        images = [a for a in attachments if a.is_image]
        if not images:
            return text

        parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for image in images:
            url = await asyncio.to_thread(_image_data_url, image)
            if url:
                parts.append({"type": "image_url", "image_url": {"url": url}})
        return parts

    async def _extract_attachment(self, attachment: Attachment) -> str:
        try:
            return await asyncio.to_thread(self.attachment_extractor, attachment)
        except Exception as e:
            logger.warning("Failed to read attachment %s: %s", attachment.path, e)
            return f"[Failed to read attachment: {e}]"

    @staticmethod
    def _history_messages(history: list[Message], window: int) -> list[dict[str, Any]]:
        recent = history[-window:] if window > 0 else []
        return [{"role": m.role, "content": m.content} for m in recent]

    # -- personas -----------------------------------------------------------

    async def _run_chat(
        self,
        context: GatheredContext,
        user_content: str | list[dict[str, Any]],
        iterations: int,
        emit: StepCallback,
    ) -> tuple[str, int]:
        messages = [
            {"role": "system", "content": build_chat_system_prompt(self.settings.agent_name)},
            *self._history_messages(context.history, self.settings.history_window),
            {"role": "user", "content": user_content},
        ]
        emit(AgentStep.thinking("Thinking..."))
        self._transition(AgentState.INVOKE_MODEL)
        response = await self.model.invoke(messages)
        return response.content, iterations + 1

    async def _run_agent(
        self,
        context: GatheredContext,
        user_content: str | list[dict[str, Any]],
        iterations: int,
        emit: StepCallback,
    ) -> tuple[str, AgentState, int]:
        """The tool loop. Returns (text, terminal state, iterations used)."""
        system_prompt = build_agent_system_prompt(self.settings.agent_name, self.registry.describe())
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            *self._history_messages(context.history, self.settings.context_window),
            {"role": "user", "content": user_content},
        ]
        emit(AgentStep.thinking("Analyzing request..."))

        while iterations < self.settings.max_iterations:
            self._transition(AgentState.INVOKE_MODEL)
            response = await self.model.invoke(messages)
            iterations += 1
            content = response.content
            messages.append({"role": "assistant", "content": content})

            self._transition(AgentState.PARSE_OUTPUT)
            call = parse_tool_call(content)
            if call is None:
                return content, AgentState.FINAL_ANSWER, iterations
            if call.is_final_answer:
                logger.debug("Treating pseudo-tool %r as the final answer", call.tool)
                return call.answer_text(content), AgentState.FINAL_ANSWER, iterations
            if call.tool not in self.registry:
                logger.warning("Unknown tool %r, treating output as the final answer", call.tool)
                return content, AgentState.FINAL_ANSWER, iterations

            thinking = _THINKING_RE.search(content)
            if thinking and thinking.group(1).strip():
                emit(AgentStep.thinking(thinking.group(1).strip()))

            self._transition(AgentState.DISPATCH_TOOL)
            output = await self._dispatch(call.tool, call.args, emit)

            self._transition(AgentState.APPEND_OBSERVATION)
            messages.append({"role": "user", "content": f"Tool '{call.tool}' output:\n{output}"})

        logger.warning("Iteration limit of %d reached", self.settings.max_iterations)
        return ITERATION_LIMIT_MESSAGE, AgentState.ITERATION_LIMIT_EXCEEDED, iterations

    async def _dispatch(self, tool_name: str, raw_args: Any, emit: StepCallback) -> str:
        args_for_display = raw_args if isinstance(raw_args, dict) else {"value": raw_args}
        emit(AgentStep.action(tool_name, args_for_display))

        def announce_plan(call: ToolCall) -> None:
            if call.name == "create_plan":
                emit(AgentStep.plan(list(call.args.steps)))
            elif call.name == "mark_step_completed":
                emit(AgentStep.plan_update(call.args.step_index))

        output = await self.executor.dispatch(tool_name, raw_args, announce_plan)
        emit(AgentStep.observation(tool_name, output))
        return output

    # -- after the turn -----------------------------------------------------

    def _schedule_title(self, conversation_id: str, user_input: str, response: str) -> None:
        task = asyncio.create_task(self.generate_title(conversation_id, user_input, response))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def generate_title(self, conversation_id: str, user_input: str, response: str) -> str:
        """Name a conversation after its first exchange.

        Falls back to the start of the user's message if the model fails.
        """
        try:
            result = await self.model.invoke([
                {"role": "user", "content": build_title_prompt(user_input, response)},
            ])
            title = clean_title(result.content) or fallback_title(user_input)
        except Exception as e:
            logger.warning("Title generation failed: %s", e)
            title = fallback_title(user_input)

        try:
            await asyncio.to_thread(self.conversations.update_title, conversation_id, title)
        except Exception as e:
            logger.warning("Could not save title for %s: %s", conversation_id, e)
        return title

    async def drain(self) -> None:
        """Wait for background work (title generation) to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def promote_conversation(self, conversation_id: str) -> int:
        """Copy a conversation's transcript into the conversation layer."""
        conversation = self.conversations.get(conversation_id)
        if conversation is None or not conversation.messages:
            return 0
        return self.knowledge.save_conversation(
            conversation_id, conversation.messages, conversation.title,
        )

    async def _promote_quietly(self, conversation_id: str) -> None:
        try:
            await asyncio.to_thread(self.promote_conversation, conversation_id)
        except Exception as e:
            logger.warning("Could not promote conversation %s: %s", conversation_id, e)


def _image_data_url(attachment: Attachment) -> str | None:
    path = Path(attachment.path)
    media_type = attachment.type if attachment.type.startswith("image/") else None
    media_type = media_type or mimetypes.guess_type(path.name)[0] or "image/png"
    try:
        data = base64.b64encode(path.read_bytes()).decode("ascii")
    except OSError as e:
        logger.warning("Failed to read image %s: %s", path, e)
        return None
    return f"data:{media_type};base64,{data}"
