"""Intermediate steps emitted while the agent works.

Steps are delivered to an ``on_step`` callback for display only; they are
never persisted with the conversation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class StepType(Enum):
    """Kinds of intermediate agent output."""

    THINKING = "thinking"
    ACTION = "action"
    OBSERVATION = "observation"
    PLAN = "plan"
    PLAN_UPDATE = "plan_update"


@dataclass
class AgentStep:
    """A single step shown to the user while the agent runs."""

    type: StepType
    content: str
    data: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def thinking(text: str) -> AgentStep:
        """Model reasoning that preceded a tool call."""
        return AgentStep(type=StepType.THINKING, content=text)

    @staticmethod
    def action(tool_name: str, args: dict[str, Any]) -> AgentStep:
        """A tool is about to run."""
        return AgentStep(
            type=StepType.ACTION,
            content=f"Using tool: {tool_name}",
            data={"tool": tool_name, "args": args},
        )

    @staticmethod
    def observation(tool_name: str, output: str) -> AgentStep:
        """A tool has returned."""
        return AgentStep(
            type=StepType.OBSERVATION,
            content=output,
            data={"tool": tool_name},
        )

    @staticmethod
    def plan(steps: list[str]) -> AgentStep:
        return AgentStep(type=StepType.PLAN, content="\n".join(steps), data={"steps": steps})

    @staticmethod
    def plan_update(step_index: int) -> AgentStep:
        return AgentStep(
            type=StepType.PLAN_UPDATE,
            content=f"Step {step_index + 1} completed",
            data={"step_index": step_index},
        )


StepCallback = Callable[[AgentStep], None]
