"""Deskmate CLI: main entry point.

Commands:
  chat           Start an interactive chat session
  ask            Answer a single question and exit
  ingest         Add a file to the knowledge base
  search         Search the knowledge base
  reindex        Rebuild the vector index from stored chunks
  stats          Show knowledge base statistics
  conversations  List, show, delete, promote or summarize conversations
  sync           Sync watched folders into the knowledge base
  config         View and update settings
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from deskmate import __version__
from deskmate.knowledge.schema import KnowledgeLayer

LAYER_CHOICES = [layer.value for layer in KnowledgeLayer]


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="deskmate",
        description="Deskmate: a personal AI assistant with a layered knowledge base",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", type=Path, help="Data directory (default: $DESKMATE_HOME or ~/.deskmate)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat session")
    chat_parser.add_argument("--conversation", help="Conversation ID to continue")
    chat_parser.add_argument("--mode", choices=["chat", "agent"], default="agent")

    # ask
    ask_parser = subparsers.add_parser("ask", help="Answer a single question and exit")
    ask_parser.add_argument("text", help="The question")
    ask_parser.add_argument("--mode", choices=["chat", "agent"], default="agent")
    ask_parser.add_argument("--attach", action="append", default=[], help="File or image to attach")
    ask_parser.add_argument("--conversation", help="Conversation ID to continue")

    # ingest
    ingest_parser = subparsers.add_parser("ingest", help="Add a file to the knowledge base")
    ingest_parser.add_argument("file", type=Path, help="Text or markdown file")
    ingest_parser.add_argument("--layer", choices=LAYER_CHOICES, default="core")
    ingest_parser.add_argument("--tags", default="", help="Comma-separated tags")

    # search
    search_parser = subparsers.add_parser("search", help="Search the knowledge base")
    search_parser.add_argument("query")
    search_parser.add_argument("--limit", type=int, default=None)
    search_parser.add_argument("--layer", action="append", choices=LAYER_CHOICES, help="Restrict to a layer")

    # reindex, stats
    subparsers.add_parser("reindex", help="Rebuild the vector index from stored chunks")
    subparsers.add_parser("stats", help="Show knowledge base statistics")

    # conversations
    conv_parser = subparsers.add_parser("conversations", help="Manage conversations")
    conv_parser.add_argument(
        "action", choices=["list", "show", "delete", "promote", "summarize", "search"],
    )
    conv_parser.add_argument("target", nargs="?", help="Conversation ID (or query for search)")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Sync watched folders into the knowledge base")
    sync_parser.add_argument("paths", nargs="*", help="Folders to sync (default: watch_paths setting)")

    # config
    config_parser = subparsers.add_parser("config", help="View and update settings")
    config_parser.add_argument("action", choices=["show", "get", "set"], help="Action to perform")
    config_parser.add_argument("key", nargs="?", help="Setting key (for get/set)")
    config_parser.add_argument("value", nargs="?", help="Setting value (for set)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        # Default to chat if no command given
        args.command = "chat"
        args.conversation = None
        args.mode = "agent"

    commands = {
        "chat": cmd_chat,
        "ask": cmd_ask,
        "ingest": cmd_ingest,
        "search": cmd_search,
        "reindex": cmd_reindex,
        "stats": cmd_stats,
        "conversations": cmd_conversations,
        "sync": cmd_sync,
        "config": cmd_config,
    }
    try:
        return commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except Exception as e:
        logging.getLogger(__name__).debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _open_app(args: argparse.Namespace):
    from deskmate.app import Deskmate

    return Deskmate(getattr(args, "data_dir", None))


def cmd_chat(args: argparse.Namespace) -> int:
    """Start an interactive chat session."""
    from deskmate.chat.repl import run_repl
    from deskmate.core.agent import AgentMode

    app = _open_app(args)
    run_repl(app, conversation_id=args.conversation, mode=AgentMode(args.mode))
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    """Answer one question, printing intermediate steps."""
    from deskmate.chat.renderer import ChatRenderer
    from deskmate.chat.repl import attachment_for
    from deskmate.core.agent import AgentMode

    app = _open_app(args)
    renderer = ChatRenderer()

    for path in args.attach:
        if not Path(path).expanduser().is_file():
            print(f"File not found: {path}", file=sys.stderr)
            return 1
    attachments = [attachment_for(p) for p in args.attach]

    conversation_id = args.conversation or app.conversations.create().id

    async def _ask():
        agent = app.agent
        try:
            return await agent.run(
                conversation_id,
                args.text,
                attachments=attachments,
                mode=AgentMode(args.mode),
                on_step=renderer.render_step,
            )
        finally:
            await agent.drain()

    result = asyncio.run(_ask())
    renderer.render_assistant_message(result.text)
    renderer.render_info(f"conversation: {conversation_id}")
    return 0


def cmd_ingest(args: argparse.Namespace) -> int:
    """Add a text or markdown file to the knowledge base."""
    from deskmate.knowledge.sync import extract_plain_text

    path = args.file.expanduser()
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        return 1
    extracted = extract_plain_text(path)
    if extracted is None:
        print(f"Unsupported file type: {path.suffix}", file=sys.stderr)
        return 1

    text, doc_type = extracted
    tags = [t.strip() for t in args.tags.split(",") if t.strip()]
    app = _open_app(args)
    count = app.knowledge.ingest(
        text,
        {"source": str(path.resolve()), "type": doc_type, "title": path.stem, "tags": tags},
        layer=KnowledgeLayer(args.layer),
        replace=True,
    )
    print(f"Ingested {path.name}: {count} chunks into the {args.layer} layer")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Search the knowledge base."""
    from deskmate.chat.renderer import ChatRenderer

    app = _open_app(args)
    layers = [KnowledgeLayer(v) for v in args.layer] if args.layer else None
    results = app.knowledge.search(args.query, args.limit, layers)
    ChatRenderer().render_search_results(results)
    return 0


def cmd_reindex(args: argparse.Namespace) -> int:
    """Rebuild the vector index."""
    app = _open_app(args)
    print("Reindexing knowledge base...")
    result = app.knowledge.reindex()
    if not result.success:
        print(f"Reindex failed: {result.error or 'unknown'}", file=sys.stderr)
        return 1
    print(f"Reindexed {result.count} chunks")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show knowledge base statistics."""
    from deskmate.chat.renderer import ChatRenderer

    app = _open_app(args)
    ChatRenderer().render_stats(app.knowledge.stats())
    return 0


def cmd_conversations(args: argparse.Namespace) -> int:
    """List, show, delete, promote, summarize or search conversations."""
    from deskmate.chat.renderer import ChatRenderer

    app = _open_app(args)
    renderer = ChatRenderer()
    action = args.action

    if action == "list":
        renderer.render_conversations(app.conversations.list_all())
        return 0

    if not args.target:
        print(f"Usage: deskmate conversations {action} <id>", file=sys.stderr)
        return 1

    if action == "search":
        for match in app.conversations.search(args.target):
            renderer.render_info(
                f"{match.conversation.id}  {match.conversation.title}  "
                f"[{match.message.role}] {match.message.content[:80]}"
            )
        return 0

    conversation = app.conversations.get(args.target)
    if conversation is None:
        print(f"Conversation not found: {args.target}", file=sys.stderr)
        return 1

    if action == "show":
        renderer.render_transcript(conversation)
    elif action == "delete":
        app.conversations.delete(conversation.id)
        print(f"Deleted conversation {conversation.id}")
    elif action == "promote":
        count = app.promote(conversation.id)
        print(f"Saved {count} chunks to the conversation layer")
    elif action == "summarize":
        app.summaries.model = app.model
        summary = asyncio.run(app.summaries.generate(conversation))
        renderer.render_summary(summary)
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync watched folders into the core layer."""
    app = _open_app(args)
    folder_sync = app.folder_sync(args.paths or None)
    if not folder_sync.watch_paths:
        print("No folders to sync. Pass paths or set watch_paths.", file=sys.stderr)
        return 1
    report = folder_sync.sync()
    print(
        f"Added {len(report.added)}, modified {len(report.modified)}, "
        f"deleted {len(report.deleted)}, failed {len(report.failed)}"
    )
    return 1 if report.failed else 0


INT_KEYS = {"max_tokens", "history_window", "context_window", "search_limit", "max_iterations"}
FLOAT_KEYS = {"temperature", "code_timeout"}
BOOL_KEYS = {"auto_promote_conversations"}
LIST_KEYS = {"watch_paths"}
ALLOWED_CONFIG_KEYS = {
    "provider", "api_key", "base_url", "chat_model", "embedding_model", "image_model",
    "agent_name", *INT_KEYS, *FLOAT_KEYS, *BOOL_KEYS, *LIST_KEYS,
}


def parse_config_value(key: str, raw: str):
    """Convert a command-line string to the setting's type.

    Raises:
        ValueError: the string doesn't fit the setting's type
    """
    if key in INT_KEYS:
        return int(raw)
    if key in FLOAT_KEYS:
        return float(raw)
    if key in BOOL_KEYS:
        lowered = raw.lower()
        if lowered not in ("true", "false", "1", "0", "yes", "no"):
            raise ValueError(f"{key} must be true or false")
        return lowered in ("true", "1", "yes")
    if key in LIST_KEYS:
        return [p.strip() for p in raw.split(",") if p.strip()]
    return raw or None


def cmd_config(args: argparse.Namespace) -> int:
    """View and update settings in the data directory."""
    from deskmate.config import load_json_file, load_settings, validate_settings
    from deskmate.utils.paths import get_data_dir, get_data_settings_path

    data_dir = get_data_dir(getattr(args, "data_dir", None))
    action = args.action

    if action == "show":
        data = load_settings(data_dir).to_dict()
        if data.get("api_key"):
            data["api_key"] = "***"
        print(json.dumps(data, indent=2))
        return 0

    if not args.key or (action == "set" and args.value is None):
        usage = "<key>" if action == "get" else "<key> <value>"
        print(f"Usage: deskmate config {action} {usage}", file=sys.stderr)
        return 1
    if args.key not in ALLOWED_CONFIG_KEYS:
        print(
            f"Unknown key: {args.key}. "
            f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}",
            file=sys.stderr,
        )
        return 1

    if action == "get":
        value = getattr(load_settings(data_dir), args.key)
        print(value if value is not None else "")
        return 0

    try:
        value = parse_config_value(args.key, args.value)
    except ValueError as e:
        print(f"Invalid value for {args.key}: {e}", file=sys.stderr)
        return 1

    # Validate against the merged settings before writing
    candidate = load_settings(data_dir)
    setattr(candidate, args.key, value)
    errors = validate_settings(candidate)
    if errors:
        for err in errors:
            print(f"Validation error: {err}", file=sys.stderr)
        return 1

    settings_path = get_data_settings_path(data_dir)
    data = load_json_file(settings_path)
    data[args.key] = value
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    print(f"{args.key} = {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
