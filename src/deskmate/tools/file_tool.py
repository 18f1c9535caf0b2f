"""File tool handler: read local text files."""

from __future__ import annotations

from pathlib import Path

from deskmate.core.errors import ToolError
from deskmate.tools.registry import ReadFileArgs

MAX_READ_CHARS = 5000


def handle_read_file(args: ReadFileArgs) -> str:
    """Read a UTF-8 file, truncated to MAX_READ_CHARS characters."""
    path = Path(args.path).expanduser()
    if not path.exists():
        raise ToolError("read_file", f"File not found: {path}")
    if not path.is_file():
        raise ToolError("read_file", f"Not a file: {path}")
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolError("read_file", f"Error reading file: {e}") from e
    return content[:MAX_READ_CHARS]
