"""Typed configuration for workflow steps, loops and the whole graph.

Scalar-or-list fields (``input``, ``model``, ``action``, ``output``) are kept as
written and normalized through the ``*_list`` helpers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

STDIN = "STDIN"
STDOUT = "STDOUT"
NA = "NA"
MEMORY = "MEMORY"

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_CONTEXT_WINDOW = 5
DEFAULT_CHECKPOINT_INTERVAL = 5
DEFAULT_MAX_HISTORY = 100

STEP_KEYS = frozenset(
    {
        "input",
        "model",
        "action",
        "output",
        "generate",
        "process",
        "type",
        "agentic_loop",
        "codebase_index",
    }
)


class StepKind(str, Enum):
    SPECIALIZED_API = "openai-responses"
    GENERATE = "generate"
    PROCESS = "process"
    INLINE_LOOP = "agentic_loop"
    REPO_INDEX = "codebase-index"
    STANDARD = "standard"


class ExitCondition(str, Enum):
    LLM_DECIDES = "llm_decides"
    PATTERN_MATCH = "pattern_match"


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v) != ""]
    text = str(value)
    return [text] if text else []


class _Config(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ChunkConfig(_Config):
    by: Literal["lines"] = "lines"
    size: int = Field(default=1000, gt=0)
    overlap: int = Field(default=0, ge=0)
    max_chunks: int = Field(default=0, ge=0, description="0 = no limit")


class ToolListConfig(_Config):
    allowlist: list[str] = Field(default_factory=list)
    denylist: list[str] = Field(default_factory=list)
    timeout: int = Field(default=0, ge=0, description="0 = use the global timeout")


class GenerateStepConfig(_Config):
    model: str | list[str] | None = None
    action: str | list[str] | None = None
    output: str = ""
    context_files: list[str] = Field(default_factory=list)


class ProcessStepConfig(_Config):
    workflow_file: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    capture_outputs: list[str] = Field(default_factory=list)


class IndexExposeConfig(_Config):
    workflow_variable: bool = True


class CodebaseIndexConfig(_Config):
    root: str = "."
    output_path: str = ""
    max_files: int = Field(default=0, ge=0)
    expose: IndexExposeConfig = Field(default_factory=IndexExposeConfig)


class StepConfig(_Config):
    """Configuration of one step. Exactly one kind is active per step."""

    type: str = ""
    input: str | list[str] | None = None
    model: str | list[str] | None = None
    action: str | list[str] | None = None
    output: str | list[str] | None = None
    batch_mode: Literal["combined", "individual"] = "combined"
    skip_errors: bool = False
    chunk: ChunkConfig | None = None
    memory: bool = False
    tool: ToolListConfig | None = None

    instructions: str = ""
    temperature: float | None = None
    max_output_tokens: int | None = None

    generate: GenerateStepConfig | None = None
    process: ProcessStepConfig | None = None
    agentic_loop: AgenticLoopConfig | None = None
    codebase_index: CodebaseIndexConfig | None = None

    @field_validator("input", "model", "action", "output", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, list):
            return [str(v) for v in value]
        return str(value)

    @property
    def input_list(self) -> list[str]:
        return _as_str_list(self.input)

    @property
    def model_list(self) -> list[str]:
        return _as_str_list(self.model)

    @property
    def action_list(self) -> list[str]:
        return _as_str_list(self.action)

    @property
    def output_list(self) -> list[str]:
        return _as_str_list(self.output)

    @property
    def kind(self) -> StepKind:
        """Dispatch kind, checked in precedence order."""
        if self.type == StepKind.SPECIALIZED_API.value:
            return StepKind.SPECIALIZED_API
        if self.generate is not None:
            return StepKind.GENERATE
        if self.process is not None:
            return StepKind.PROCESS
        if self.agentic_loop is not None:
            return StepKind.INLINE_LOOP
        if self.type == StepKind.REPO_INDEX.value or self.codebase_index is not None:
            return StepKind.REPO_INDEX
        return StepKind.STANDARD

    def declared_kinds(self) -> set[StepKind]:
        """Every non-standard kind whose fields are present on this step."""
        kinds: set[StepKind] = set()
        if self.type == StepKind.SPECIALIZED_API.value:
            kinds.add(StepKind.SPECIALIZED_API)
        if self.generate is not None:
            kinds.add(StepKind.GENERATE)
        if self.process is not None:
            kinds.add(StepKind.PROCESS)
        if self.agentic_loop is not None:
            kinds.add(StepKind.INLINE_LOOP)
        if self.type == StepKind.REPO_INDEX.value or self.codebase_index is not None:
            kinds.add(StepKind.REPO_INDEX)
        return kinds


class Step(_Config):
    name: str
    config: StepConfig


def _steps_from_raw(raw: Any) -> list[Any]:
    """Accept steps written as a mapping or as a list of single-key mappings."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [{"name": name, "config": cfg or {}} for name, cfg in raw.items()]
    if isinstance(raw, list):
        steps: list[Any] = []
        for item in raw:
            if isinstance(item, Step):
                steps.append(item)
            elif isinstance(item, dict) and "config" in item and "name" in item:
                steps.append(item)
            elif isinstance(item, dict):
                steps.extend({"name": name, "config": cfg or {}} for name, cfg in item.items())
            else:
                raise ValueError(f"invalid step entry: {item!r}")
        return steps
    raise ValueError("steps must be a mapping or a list")


class AgenticLoopConfig(_Config):
    """Settings for one iterative loop, plus its dependency metadata."""

    name: str = ""
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    timeout_seconds: int = 0
    exit_condition: str = ExitCondition.LLM_DECIDES.value
    exit_pattern: str = ""
    context_window: int = DEFAULT_CONTEXT_WINDOW
    max_history: int = DEFAULT_MAX_HISTORY
    steps: list[Step] = Field(default_factory=list)

    depends_on: list[str] = Field(default_factory=list)
    input_state: str = ""
    output_state: str = ""
    stateful: bool = False
    checkpoint_interval: int = 0

    @field_validator("steps", mode="before")
    @classmethod
    def _normalize_steps(cls, value: Any) -> Any:
        return _steps_from_raw(value)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalize_depends_on(cls, value: Any) -> Any:
        return _as_str_list(value)

    @property
    def effective_checkpoint_interval(self) -> int:
        if self.checkpoint_interval > 0:
            return self.checkpoint_interval
        return DEFAULT_CHECKPOINT_INTERVAL if self.stateful else 0


StepConfig.model_rebuild()
Step.model_rebuild()
AgenticLoopConfig.model_rebuild()


class WorkflowGraph(_Config):
    """The parsed workflow: steps, groups, deferred steps and loops."""

    steps: list[Step] = Field(default_factory=list)
    parallel: dict[str, list[Step]] = Field(default_factory=dict)
    deferred: dict[str, StepConfig] = Field(default_factory=dict)
    legacy_loop: AgenticLoopConfig | None = None
    loops: dict[str, AgenticLoopConfig] = Field(default_factory=dict)
    execute_loops: list[str] = Field(default_factory=list)

    def all_steps(self) -> list[Step]:
        out = list(self.steps)
        for members in self.parallel.values():
            out.extend(members)
        return out
