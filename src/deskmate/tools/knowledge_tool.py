"""Knowledge base search tool handler."""

from __future__ import annotations

from deskmate.knowledge.base import KnowledgeBase
from deskmate.knowledge.retriever import format_results
from deskmate.tools.registry import SearchKnowledgeBaseArgs


def handle_search_knowledge_base(
    args: SearchKnowledgeBaseArgs,
    knowledge: KnowledgeBase,
) -> str:
    """Hybrid search over every layer, formatted as numbered documents."""
    results = knowledge.search(args.query, limit=args.limit)
    return format_results(results)
