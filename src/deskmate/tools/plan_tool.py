"""Planning tool handlers.

The plan itself is shown to the user through agent steps; these handlers
only acknowledge it back to the model.
"""

from __future__ import annotations

from deskmate.tools.registry import CreatePlanArgs, MarkStepCompletedArgs


def handle_create_plan(args: CreatePlanArgs) -> str:
    return f"Plan created with {len(args.steps)} steps. Execute them one by one."


def handle_mark_step_completed(args: MarkStepCompletedArgs) -> str:
    return f"Step {args.step_index} marked as completed."
