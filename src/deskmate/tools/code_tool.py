"""Code execution tool handler.

Runs model-written Python in a child interpreter with a wall-clock
timeout. There is no resource or network sandboxing; the child is simply
killed when the timeout expires.
"""

from __future__ import annotations

import subprocess
import sys

from deskmate.tools.registry import RunCodeArgs

DEFAULT_TIMEOUT = 10.0


def handle_run_code(args: RunCodeArgs, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Run code with ``python -c`` and return what it printed."""
    try:
        result = subprocess.run(
            [sys.executable, "-c", args.code],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        # subprocess.run kills the child before raising
        return f"Execution timed out after {timeout:g} seconds."

    if result.returncode != 0:
        return f"Execution failed (Exit code {result.returncode}):\n{result.stderr}"
    return result.stdout or result.stderr or "[No output]"
