"""Tool-call extraction from free-form model output.

Models are asked to emit tool calls as a fenced JSON object of the form
``{"tool": "...", "args": {...}}`` but do not always comply. The parser
tries an ordered list of strategies, strictest first; the first one that
yields a call wins. When none does, the text is the final answer.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol


# Tool names models invent when they actually mean "here is my answer"
FINAL_ANSWER_ALIASES = frozenset({
    "", "null", "none", "undefined", "respond", "answer", "final_answer", "response",
})

_CONTROL_TOKEN_RE = re.compile(r"<\|.*?\|>")


def strip_control_tokens(text: str) -> str:
    """Remove chat-template artifacts such as ``<|begin_of_box|>``."""
    return _CONTROL_TOKEN_RE.sub("", text).strip()


@dataclass
class ParsedCall:
    """A tool call recovered from model text."""

    tool: str
    args: Any = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    strategy: str = ""

    @property
    def is_final_answer(self) -> bool:
        return self.tool.lower() in FINAL_ANSWER_ALIASES

    def answer_text(self, fallback: str) -> str:
        """Human-readable text carried by a pseudo-tool call."""
        for key in ("response", "answer", "content"):
            value = self.payload.get(key)
            if value:
                return strip_control_tokens(str(value))
        if isinstance(self.args, dict):
            for key in ("response", "answer", "content", "text"):
                value = self.args.get(key)
                if isinstance(value, str) and value:
                    return strip_control_tokens(value)
        if isinstance(self.args, str) and self.args:
            return strip_control_tokens(self.args)
        return strip_control_tokens(fallback)


def _trim_after_last_brace(candidate: str) -> str:
    candidate = candidate.strip()
    last = candidate.rfind("}")
    if last != -1 and last < len(candidate) - 1:
        candidate = candidate[:last + 1]
    return candidate


def _to_call(obj: Any, strategy: str) -> ParsedCall | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("tool")
    name = strip_control_tokens(name) if isinstance(name, str) else ""
    args = obj.get("args", {})
    if args is None:
        args = {}
    return ParsedCall(tool=name, args=args, payload=obj, strategy=strategy)


class ParseStrategy(Protocol):
    name: str

    def parse(self, text: str) -> ParsedCall | None:
        ...


class FencedJsonStrategy:
    """A code block explicitly tagged ``json``."""

    name = "fenced_json"
    pattern = re.compile(r"```json\s*(\{[\s\S]*?\})\s*```")

    def parse(self, text: str) -> ParsedCall | None:
        match = self.pattern.search(text)
        if not match:
            return None
        try:
            obj = json.loads(_trim_after_last_brace(match.group(1)))
        except json.JSONDecodeError:
            return None
        return _to_call(obj, self.name)


class FencedCallStrategy:
    """Any fenced block whose body looks like a tool call."""

    name = "fenced_call"
    pattern = re.compile(r"```[a-zA-Z]*\s*(\{[\s\S]*\"tool\"[\s\S]*\})\s*```")

    def parse(self, text: str) -> ParsedCall | None:
        match = self.pattern.search(text)
        if not match:
            return None
        try:
            obj = json.loads(_trim_after_last_brace(match.group(1)))
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict) or "tool" not in obj:
            return None
        return _to_call(obj, self.name)


class BareCallStrategy:
    """An unfenced, bracket-balanced object with a ``tool`` key."""

    name = "bare_call"

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()

    def parse(self, text: str) -> ParsedCall | None:
        if '"tool"' not in text:
            return None
        start = text.find("{")
        while start != -1:
            try:
                obj, _ = self._decoder.raw_decode(text, start)
            except json.JSONDecodeError:
                obj = None
            if isinstance(obj, dict) and "tool" in obj:
                return _to_call(obj, self.name)
            start = text.find("{", start + 1)
        return None


DEFAULT_STRATEGIES: tuple[ParseStrategy, ...] = (
    FencedJsonStrategy(),
    FencedCallStrategy(),
    BareCallStrategy(),
)


def parse_tool_call(
    text: str,
    strategies: tuple[ParseStrategy, ...] = DEFAULT_STRATEGIES,
) -> ParsedCall | None:
    """Return the first call any strategy extracts, or None."""
    if not text:
        return None
    for strategy in strategies:
        call = strategy.parse(text)
        if call is not None:
            return call
    return None
