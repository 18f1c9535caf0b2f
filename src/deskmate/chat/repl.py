"""prompt_toolkit REPL for the Deskmate chat interface.

Each turn runs as a cancellable asyncio.Task; Ctrl+C while the agent is
working cancels the turn and returns to the prompt.
"""

from __future__ import annotations

import asyncio
import mimetypes
import signal
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys

from deskmate.app import Deskmate
from deskmate.chat.renderer import ChatRenderer
from deskmate.core.agent import AgentMode
from deskmate.core.conversations import Attachment
from deskmate.core.errors import DeskmateError


MODE_COLORS = {
    AgentMode.CHAT: "cyan",
    AgentMode.AGENT: "green",
}

HELP_TEXT = (
    "**Commands:**\n"
    "- `/chat`, `/agent` switch persona (Shift+Tab toggles)\n"
    "- `/attach PATH` attach a file or image to the next message\n"
    "- `/new` start a new conversation\n"
    "- `/conversations` list conversations\n"
    "- `/open ID` continue another conversation\n"
    "- `/search QUERY` search the knowledge base\n"
    "- `/promote` save this conversation to the knowledge base\n"
    "- `/summarize` write minutes for this conversation\n"
    "- `/quit` exit\n\n"
    "End a line with `\\` to continue on the next one."
)


def attachment_for(path: str) -> Attachment:
    """Build an attachment, typed as an image when the file looks like one."""
    resolved = Path(path).expanduser().resolve()
    mime = mimetypes.guess_type(resolved.name)[0] or ""
    kind = "image" if mime.startswith("image/") else "file"
    return Attachment(type=kind, path=str(resolved), name=resolved.name)


class ChatSession:
    """State of one interactive session."""

    def __init__(self, app: Deskmate, conversation_id: str | None, mode: AgentMode):
        self.app = app
        self.mode = mode
        self.pending: list[Attachment] = []
        if conversation_id is None or app.conversations.get(conversation_id) is None:
            conversation_id = app.conversations.create().id
        self.conversation_id = conversation_id

    def toggle_mode(self) -> AgentMode:
        self.mode = AgentMode.CHAT if self.mode is AgentMode.AGENT else AgentMode.AGENT
        return self.mode


def run_repl(
    app: Deskmate,
    conversation_id: str | None = None,
    mode: AgentMode = AgentMode.AGENT,
) -> None:
    """Run the interactive chat loop until the user quits."""
    renderer = ChatRenderer()
    session = ChatSession(app, conversation_id, mode)
    renderer.render_welcome(app.settings.agent_name, session.mode.name, MODE_COLORS[session.mode])
    if conversation_id and conversation_id == session.conversation_id:
        renderer.render_info(f"Continuing conversation {conversation_id}")

    try:
        asyncio.run(_async_repl(session, renderer))
    except KeyboardInterrupt:
        pass


async def _async_repl(session: ChatSession, renderer: ChatRenderer) -> None:
    app = session.app
    bindings = KeyBindings()

    @bindings.add(Keys.BackTab)  # Shift+Tab
    def _toggle_mode(event):
        mode = session.toggle_mode()
        renderer.render_mode_change(mode.name, MODE_COLORS[mode])

    history_path = app.data_dir / "history"
    prompt_session = PromptSession(history=FileHistory(str(history_path)), key_bindings=bindings)

    def get_prompt():
        color = MODE_COLORS[session.mode]
        return HTML(f'<style fg="{color}">{session.mode.value}&gt; </style>')

    async def get_input() -> str:
        return await prompt_session.prompt_async(get_prompt)

    try:
        while True:
            try:
                raw_input = (await get_input()).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not raw_input:
                continue

            user_input = await _handle_continuation(raw_input, get_input)
            if user_input.startswith("/"):
                if not await _handle_command(user_input, session, renderer):
                    break
                continue

            await _run_turn(session, renderer, user_input)
    finally:
        if "agent" in vars(app):
            await app.agent.drain()


async def _run_turn(session: ChatSession, renderer: ChatRenderer, user_input: str) -> None:
    """Run one agent turn as a task that Ctrl+C can cancel."""
    app = session.app
    try:
        agent = app.agent
    except DeskmateError as e:
        renderer.render_error(str(e))
        return

    attachments, session.pending = session.pending, []
    task = asyncio.create_task(
        agent.run(
            session.conversation_id,
            user_input,
            attachments=attachments,
            mode=session.mode,
            on_step=renderer.render_step,
        )
    )

    original_handler = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, lambda sig, frame: task.cancel())
    try:
        result = await task
    except asyncio.CancelledError:
        renderer.render_cancelled()
        return
    except DeskmateError as e:
        renderer.render_error(str(e))
        return
    finally:
        signal.signal(signal.SIGINT, original_handler)

    renderer.render_assistant_message(result.text)
    if result.escalated:
        session.mode = result.mode
        renderer.render_mode_change(result.mode.name, MODE_COLORS[result.mode])


async def _handle_command(command_line: str, session: ChatSession, renderer: ChatRenderer) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    app = session.app
    command, _, arg = command_line.partition(" ")
    arg = arg.strip()

    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        renderer.render_assistant_message(HELP_TEXT)
    elif command in ("/chat", "/agent"):
        session.mode = AgentMode.CHAT if command == "/chat" else AgentMode.AGENT
        renderer.render_mode_change(session.mode.name, MODE_COLORS[session.mode])
    elif command == "/attach":
        if not arg:
            renderer.render_info("Usage: /attach PATH")
        elif not Path(arg).expanduser().is_file():
            renderer.render_error(f"File not found: {arg}")
        else:
            attachment = attachment_for(arg)
            session.pending.append(attachment)
            renderer.render_info(f"Attached {attachment.name} ({attachment.type})")
    elif command == "/new":
        session.conversation_id = app.conversations.create().id
        renderer.render_info(f"New conversation {session.conversation_id}")
    elif command == "/conversations":
        renderer.render_conversations(app.conversations.list_all()[:20])
    elif command == "/open":
        if app.conversations.get(arg) is None:
            renderer.render_error(f"Conversation not found: {arg}")
        else:
            session.conversation_id = arg
            renderer.render_transcript(app.conversations.get(arg))
    elif command == "/search":
        results = await asyncio.to_thread(app.knowledge.search, arg)
        renderer.render_search_results(results)
    elif command == "/promote":
        try:
            count = await asyncio.to_thread(app.promote, session.conversation_id)
        except DeskmateError as e:
            renderer.render_error(str(e))
        else:
            renderer.render_info(f"Saved conversation to the knowledge base ({count} chunks)")
    elif command == "/summarize":
        conversation = app.conversations.get(session.conversation_id)
        try:
            app.summaries.model = app.model
            summary = await app.summaries.generate(conversation)
        except DeskmateError as e:
            renderer.render_error(str(e))
        else:
            renderer.render_summary(summary)
    else:
        renderer.render_error(f"Unknown command: {command}. Type /help for commands.")
    return True


async def _handle_continuation(raw_input: str, get_input) -> str:
    """Backslash at end of line continues input on the next line."""
    lines = [raw_input]
    while lines[-1].endswith("\\"):
        lines[-1] = lines[-1][:-1]
        try:
            lines.append(await get_input())
        except (EOFError, KeyboardInterrupt):
            break
    return "\n".join(lines)
