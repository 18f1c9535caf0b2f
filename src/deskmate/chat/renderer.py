"""Rich terminal rendering for Deskmate chat output."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from deskmate.core.conversations import Conversation
from deskmate.core.events import AgentStep, StepType
from deskmate.core.summaries import ConversationSummary
from deskmate.knowledge.schema import SearchResult

_THINKING_RE = re.compile(r"<thinking>([\s\S]*?)</thinking>", re.IGNORECASE)

OBSERVATION_PREVIEW_CHARS = 400


def split_thinking(text: str) -> tuple[str, str]:
    """Separate <thinking> blocks from the visible answer."""
    thoughts = "\n".join(m.strip() for m in _THINKING_RE.findall(text))
    answer = _THINKING_RE.sub("", text).strip()
    return thoughts, answer


class ChatRenderer:
    """Renders chat output with rich formatting."""

    def __init__(self, console: Console | None = None, show_thinking: bool = False):
        self.console = console or Console()
        self.show_thinking = show_thinking

    def render_assistant_message(self, text: str) -> None:
        thoughts, answer = split_thinking(text)
        self.console.print()
        if thoughts and self.show_thinking:
            self.console.print(f"[dim italic]{thoughts}[/dim italic]")
        self.console.print(Markdown(answer or text))
        self.console.print()

    def render_step(self, step: AgentStep) -> None:
        """Render an intermediate agent step."""
        if step.type is StepType.THINKING:
            self.console.print(f"[dim italic]{step.content}[/dim italic]")
        elif step.type is StepType.ACTION:
            args = step.data.get("args") or {}
            summary = ", ".join(f"{k}={_short(v)}" for k, v in args.items())
            self.console.print(
                Panel(
                    f"[bold]{step.data.get('tool', '')}[/bold]({summary})",
                    title="Tool Use",
                    border_style="blue",
                    expand=False,
                )
            )
        elif step.type is StepType.OBSERVATION:
            style = "red" if step.content.startswith("Error:") else "green"
            preview = step.content[:OBSERVATION_PREVIEW_CHARS]
            if len(step.content) > OBSERVATION_PREVIEW_CHARS:
                preview += " ..."
            self.console.print(f"  [{style}]{preview}[/{style}]")
        elif step.type is StepType.PLAN:
            lines = "\n".join(
                f"{i}. {s}" for i, s in enumerate(step.data.get("steps", []), start=1)
            )
            self.console.print(Panel(lines, title="Plan", border_style="yellow", expand=False))
        elif step.type is StepType.PLAN_UPDATE:
            self.console.print(f"  [yellow]{step.content}[/yellow]")

    def render_error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {message}")

    def render_info(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

    def render_mode_change(self, mode_name: str, color: str) -> None:
        self.console.print(f"[bold {color}]Mode: {mode_name}[/bold {color}]")

    def render_welcome(self, agent_name: str, mode_name: str, color: str) -> None:
        self.console.print(
            Panel(
                f"[bold]{agent_name}[/bold], your desktop assistant\n"
                f"Mode: [{color}]{mode_name}[/{color}]  "
                "Shift+Tab: switch mode  /help: commands",
                border_style="cyan",
            )
        )

    def render_cancelled(self) -> None:
        self.console.print("\n[bold yellow]Cancelled.[/bold yellow]")

    def render_search_results(self, results: list[SearchResult]) -> None:
        if not results:
            self.render_info("No relevant information found.")
            return
        table = Table(show_lines=True)
        table.add_column("#", justify="right")
        table.add_column("Source")
        table.add_column("Layer")
        table.add_column("Via")
        table.add_column("Text")
        for i, result in enumerate(results, start=1):
            table.add_row(
                str(i),
                result.source,
                result.layer.value,
                result.origin,
                _short(result.text, 120),
            )
        self.console.print(table)

    def render_conversations(self, conversations: list[Conversation]) -> None:
        if not conversations:
            self.render_info("No conversations yet.")
            return
        table = Table()
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")
        for conversation in conversations:
            table.add_row(
                conversation.id,
                conversation.title,
                str(conversation.message_count),
                _format_time(conversation.updated_at),
            )
        self.console.print(table)

    def render_transcript(self, conversation: Conversation) -> None:
        self.console.print(f"[bold]{conversation.title}[/bold]  [dim]{conversation.id}[/dim]")
        for message in conversation.messages:
            color = "cyan" if message.role == "user" else "green"
            self.console.print(f"\n[bold {color}]{message.role}[/bold {color}]")
            _, answer = split_thinking(message.content)
            self.console.print(Markdown(answer or message.content))
            for attachment in message.attachments:
                self.console.print(f"[dim]  attached: {attachment.name}[/dim]")

    def render_summary(self, summary: ConversationSummary) -> None:
        body = summary.summary
        if summary.key_points:
            body += "\n\n" + "\n".join(f"- {p}" for p in summary.key_points)
        if summary.tags:
            body += "\n\n" + " ".join(f"#{t}" for t in summary.tags)
        self.console.print(
            Panel(Markdown(body), title=f"{summary.title} ({summary.date})", border_style="magenta")
        )

    def render_stats(self, stats: dict[str, Any]) -> None:
        table = Table(title="Knowledge base")
        table.add_column("Layer")
        table.add_column("Chunks", justify="right")
        table.add_column("Sources", justify="right")
        for layer, counts in stats.get("layers", {}).items():
            table.add_row(layer, str(counts["chunks"]), str(counts["sources"]))
        self.console.print(table)
        self.render_info(
            f"Total chunks: {stats.get('total_chunks', 0)}  "
            f"Retrieval: {stats.get('capability', 'lexical')}"
        )
        if stats.get("vectors") is not None:
            self.render_info(f"Vectors: {stats['vectors']}")


def _short(value: Any, limit: int = 60) -> str:
    text = str(value).replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")
