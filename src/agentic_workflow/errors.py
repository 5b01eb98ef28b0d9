"""Exception taxonomy for the workflow engine.

Configuration and dependency errors abort a run before any step executes.
Execution and loop errors abort the run while it is in progress. Persistence
errors distinguish "nothing to resume" from "resume is unsafe".
"""

from __future__ import annotations

from dataclasses import dataclass, field


class WorkflowError(Exception):
    """Base class for every error raised by the engine."""


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One problem found while validating a workflow definition."""

    field: str
    message: str
    step: str = ""
    fix: str = ""

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "workflow"
        text = f"{where}: {self.field}: {self.message}"
        if self.fix:
            text += f" (fix: {self.fix})"
        return text


@dataclass(slots=True)
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def add(self, field_name: str, message: str, *, step: str = "", fix: str = "") -> None:
        self.issues.append(ValidationIssue(field=field_name, message=message, step=step, fix=fix))

    def extend(self, other: ValidationResult) -> None:
        self.issues.extend(other.issues)

    def summary(self) -> str:
        if self.valid:
            return "Workflow is valid"
        lines = ["Validation errors found:"]
        lines.extend(f"{i}. {issue}" for i, issue in enumerate(self.issues, start=1))
        return "\n".join(lines)


class ConfigurationError(WorkflowError):
    """Missing, conflicting or malformed configuration. Always aggregated."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(result.summary())
        self.result = result


class WorkflowParseError(WorkflowError):
    """The workflow document could not be read or is not a mapping of steps."""


class DependencyError(WorkflowError):
    """Cycles, cross-group violations, output collisions and unknown loop references."""


class ProviderError(WorkflowError):
    """A model provider failed to return a response."""


class UnknownModelError(ProviderError):
    def __init__(self, model: str) -> None:
        super().__init__(f"model '{model}' is not supported by any configured provider")
        self.model = model


class ToolPermissionError(WorkflowError):
    """A tool command was rejected by the allow/deny lists."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"tool command '{command}' denied: {reason}")
        self.command = command
        self.reason = reason


class ToolExecutionError(WorkflowError):
    """A permitted tool command failed or timed out."""


class StepExecutionError(WorkflowError):
    """A step failed while running; wraps the underlying cause."""

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"step '{step_name}' failed: {message}")
        self.step_name = step_name


class BatchProcessingError(WorkflowError):
    """Every input of a fanned-out step failed."""

    def __init__(self, failures: dict[str, str]) -> None:
        detail = "; ".join(f"{path}: {reason}" for path, reason in failures.items())
        super().__init__(f"all {len(failures)} inputs failed: {detail}")
        self.failures = failures


class LoopError(WorkflowError):
    """A sub-step failed inside an agentic loop iteration."""

    def __init__(self, loop_name: str, iteration: int, message: str) -> None:
        super().__init__(f"loop '{loop_name}' iteration {iteration}: {message}")
        self.loop_name = loop_name
        self.iteration = iteration


class LoopTimeoutError(LoopError):
    """The loop deadline passed. Carries the best output obtained so far."""

    def __init__(self, loop_name: str, iteration: int, timeout_seconds: int, best_output: str) -> None:
        super().__init__(
            loop_name, iteration, f"timeout after {timeout_seconds} seconds"
        )
        self.timeout_seconds = timeout_seconds
        self.best_output = best_output


class LoopStateError(WorkflowError):
    """Base class for checkpoint persistence problems."""


class NoSavedStateError(LoopStateError):
    def __init__(self, loop_name: str) -> None:
        super().__init__(f"no saved state found for loop '{loop_name}'")
        self.loop_name = loop_name


class CorruptStateError(LoopStateError):
    def __init__(self, loop_name: str, reason: str) -> None:
        super().__init__(f"failed to parse state for loop '{loop_name}' (may be corrupted): {reason}")
        self.loop_name = loop_name


class ChecksumMismatchError(LoopStateError):
    def __init__(self, workflow_file: str, expected: str, actual: str) -> None:
        super().__init__(
            f"workflow file '{workflow_file}' has changed since the loop was checkpointed "
            f"(expected checksum {expected[:12]}, got {actual[:12]})"
        )
        self.workflow_file = workflow_file
        self.expected = expected
        self.actual = actual
