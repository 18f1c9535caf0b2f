"""Tool registry for Deskmate.

Every tool the agent may call is declared here with a pydantic model for
its arguments. Parsed model output is validated into that model before
anything runs; the registry is closed, so an unknown name is never
dispatched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from deskmate.core.errors import ToolValidationError


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ReadFileArgs(ToolArgs):
    path: str = Field(min_length=1, description="The absolute path to the file to read")


class CreatePlanArgs(ToolArgs):
    steps: list[str] = Field(min_length=1, description="List of steps to execute")


class MarkStepCompletedArgs(ToolArgs):
    step_index: int = Field(ge=0, description="The 0-based index of the step that was completed")


class SearchKnowledgeBaseArgs(ToolArgs):
    query: str = Field(min_length=1, description="What to look for in the user's documents")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum number of documents")


class RunCodeArgs(ToolArgs):
    code: str = Field(min_length=1, description="Python source to run")


class GenerateImageArgs(ToolArgs):
    prompt: str = Field(min_length=1, description="Description of the image")
    size: Literal["256x256", "512x512", "1024x1024", "1024x1792", "1792x1024"] = Field(
        default="1024x1024", description="Image dimensions",
    )


class SearchPubmedArgs(ToolArgs):
    query: str = Field(min_length=1, description="PubMed search term")
    max_results: int = Field(default=20, ge=1, le=200, description="Number of results to show")


class SearchPubmedFullArgs(ToolArgs):
    query: str = Field(min_length=1, description="PubMed search term")
    batch_size: int = Field(default=100, ge=1, le=500, description="Records fetched per request")


@dataclass(frozen=True)
class ToolSpec:
    """A tool name, its description, and its argument model."""

    name: str
    description: str
    args_model: type[ToolArgs]

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


@dataclass(frozen=True)
class ToolCall:
    """A validated call, ready to dispatch."""

    name: str
    args: ToolArgs

    def args_dict(self) -> dict[str, Any]:
        return self.args.model_dump()


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        "read_file",
        "Read content of a file from the local filesystem. "
        "Use this to analyze code or documents.",
        ReadFileArgs,
    ),
    ToolSpec(
        "create_plan",
        "Create a step-by-step plan for a complex task. "
        "Call this BEFORE executing other tools.",
        CreatePlanArgs,
    ),
    ToolSpec(
        "mark_step_completed",
        "Mark a step in the plan as completed. Call this after finishing a step.",
        MarkStepCompletedArgs,
    ),
    ToolSpec(
        "search_knowledge_base",
        "Search the user's personal knowledge base (documents, notes, past "
        "conversations). Use it for any question about the user's own data.",
        SearchKnowledgeBaseArgs,
    ),
    ToolSpec(
        "run_code",
        "Run a short Python program and return its output. "
        "Execution is killed after a few seconds.",
        RunCodeArgs,
    ),
    ToolSpec(
        "generate_image",
        "Generate an image from a text description.",
        GenerateImageArgs,
    ),
    ToolSpec(
        "search_pubmed",
        "Search PubMed for scientific literature. Returns a table of the top results.",
        SearchPubmedArgs,
    ),
    ToolSpec(
        "search_pubmed_full",
        "Retrieve up to 1000 PubMed results in batches. Slow; use only when "
        "the user asks for all results.",
        SearchPubmedFullArgs,
    ),
)


class ToolRegistry:
    """Closed set of tools the agent can call."""

    def __init__(self, specs: tuple[ToolSpec, ...] = TOOL_SPECS):
        self._specs = {spec.name: spec for spec in specs}

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._specs.values()]

    def validate(self, name: str, args: Any) -> ToolCall:
        """Coerce raw parsed arguments into the tool's argument model.

        Raises:
            ToolValidationError: unknown tool or arguments that don't fit
        """
        spec = self._specs.get(name)
        if spec is None:
            raise ToolValidationError(name, "unknown tool")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ToolValidationError(name, f"arguments must be an object, got {type(args).__name__}")
        try:
            return ToolCall(name=name, args=spec.args_model.model_validate(args))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolValidationError(name, f"invalid arguments ({problems})") from e

    def describe(self) -> str:
        """Numbered tool list with argument shapes, for the agent prompt."""
        lines = []
        for i, spec in enumerate(self._specs.values(), start=1):
            properties = spec.args_model.model_json_schema().get("properties", {})
            arg_names = ", ".join(properties) or "none"
            lines.append(f"{i}. {spec.name}({arg_names}): {spec.description}")
        return "\n".join(lines)
