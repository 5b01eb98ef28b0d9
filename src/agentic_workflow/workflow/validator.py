"""Static pre-flight validation of a parsed workflow.

Structural problems are collected into one ``ValidationResult`` so every issue
is reported together. Dependency problems (output collisions, cross-group
consumption, cycles) raise ``DependencyError``. Nothing is executed here.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from pathlib import Path

from agentic_workflow.errors import (
    ConfigurationError,
    DependencyError,
    ValidationResult,
)
from agentic_workflow.workflow.collaborators import index_variable_name
from agentic_workflow.workflow.models import (
    MEMORY,
    NA,
    STDIN,
    STDOUT,
    AgenticLoopConfig,
    ExitCondition,
    StepConfig,
    StepKind,
    WorkflowGraph,
)
from agentic_workflow.workflow.tools import is_tool_input, is_tool_output
from agentic_workflow.workflow.variables import normalize_name, parse_variable_assignment

logger = logging.getLogger(__name__)

_VARIABLE_REF_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
_EXIT_CONDITIONS = {c.value for c in ExitCondition}


def is_inline_content(value: str) -> bool:
    """True if an input string is literal content rather than a path or reference."""
    stripped = value.strip()
    if stripped in (NA, STDIN) or stripped.startswith("$") or is_tool_input(stripped):
        return False
    if "\n" in value:
        return True
    if len(value) > 200 and not stripped.startswith(("/", "./", "../", "~")):
        return True
    return False


def consumed_resources(config: StepConfig) -> list[str]:
    """Files and ``$VARS`` a step reads, excluding console and tool inputs."""
    resources: list[str] = []
    for item in config.input_list:
        source, _ = parse_variable_assignment(item)
        if source in (NA, STDIN) or is_tool_input(source) or is_inline_content(source):
            continue
        resources.append(source.strip())
    return resources


def produced_resources(config: StepConfig) -> list[str]:
    """Files and ``$VARS`` a step writes, excluding console, memory and tool outputs."""
    resources: list[str] = []
    for item in config.output_list:
        item = item.strip()
        if item in (STDOUT, MEMORY) or item.startswith(f"{MEMORY}:") or is_tool_output(item):
            continue
        resources.append(item)
    for item in config.input_list:
        _, assigned = parse_variable_assignment(item)
        if assigned:
            resources.append(f"${assigned}")
    if config.generate is not None and config.generate.output:
        resources.append(config.generate.output)
    return resources


def exported_variables(config: StepConfig) -> set[str]:
    names = {normalize_name(r) for r in produced_resources(config) if r.startswith("$")}
    if config.kind is StepKind.REPO_INDEX:
        root = config.codebase_index.root if config.codebase_index else "."
        names.add(index_variable_name(Path(root)))
    if config.process is not None:
        names |= {normalize_name(v) for v in config.process.capture_outputs}
    if config.agentic_loop is not None:
        if config.agentic_loop.output_state:
            names.add(normalize_name(config.agentic_loop.output_state))
        for sub in config.agentic_loop.steps:
            names |= exported_variables(sub.config)
    return names


def find_cycle(edges: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one cycle as a node path (first node repeated last), or None.

    Iterative depth-first search: nodes on the current path are "gray", nodes
    whose subtree is exhausted are "black" and never revisited.
    """
    black: set[str] = set()
    for start in edges:
        if start in black:
            continue
        path: list[str] = [start]
        on_path: set[str] = {start}
        stack: list[Iterator[str]] = [iter(sorted(edges.get(start, ())))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                node = path.pop()
                on_path.discard(node)
                black.add(node)
                continue
            if nxt in on_path:
                return path[path.index(nxt) :] + [nxt]
            if nxt in black:
                continue
            path.append(nxt)
            on_path.add(nxt)
            stack.append(iter(sorted(edges.get(nxt, ()))))
    return None


class GraphValidator:
    """Checks a ``WorkflowGraph`` before anything runs.

    Args:
        known_model: Predicate telling whether a model name is served by a
            configured provider. ``None`` skips model checks.
        predefined_variables: Variables available before the first step runs
            (for example the inputs of a sub-workflow).
    """

    def __init__(
        self,
        known_model: Callable[[str], bool] | None = None,
        predefined_variables: Iterable[str] = (),
    ) -> None:
        self.known_model = known_model
        self.predefined_variables = {normalize_name(v) for v in predefined_variables}

    def validate_or_raise(self, graph: WorkflowGraph) -> None:
        result = self.validate(graph)
        if not result.valid:
            logger.error(f"Workflow validation failed with {len(result.issues)} errors")
            raise ConfigurationError(result)
        self.check_dependencies(graph)

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        result = ValidationResult()

        if not graph.steps and not graph.parallel and graph.legacy_loop is None and not graph.loops:
            result.add("workflow", "no steps defined", fix="Add at least one step.")
            return result

        for step in graph.steps:
            self.validate_step(step.name, step.config, result)
        for group, members in graph.parallel.items():
            if not members:
                result.add("parallel", f"parallel group '{group}' has no steps")
            for step in members:
                self.validate_step(step.name, step.config, result)
        for name, config in graph.deferred.items():
            self.validate_step(name, config, result)

        if graph.legacy_loop is not None:
            self.validate_loop("agentic-loop", graph.legacy_loop, result, require_steps=True)

        self._validate_loops_block(graph, result)
        self._validate_variable_references(graph, result)
        return result

    def validate_step(self, name: str, config: StepConfig, result: ValidationResult) -> None:
        kinds = config.declared_kinds()
        if len(kinds) > 1:
            listed = ", ".join(sorted(k.value for k in kinds))
            result.add(
                "type",
                f"a step can only be one kind, found: {listed}",
                step=name,
                fix="Split the step into separate steps.",
            )
            return

        kind = config.kind
        if kind in (StepKind.GENERATE, StepKind.PROCESS):
            for field_name in ("model", "action", "output"):
                if getattr(config, field_name) is not None:
                    result.add(
                        field_name,
                        f"top-level '{field_name}' cannot be combined with a '{kind.value}' block",
                        step=name,
                        fix=f"Move '{field_name}' inside the '{kind.value}' block or remove it.",
                    )

        if kind is StepKind.GENERATE:
            assert config.generate is not None
            if not config.generate.action:
                result.add("generate.action", "action is required for generate steps", step=name)
            if not config.generate.output:
                result.add("generate.output", "output filename is required for generate steps", step=name)
            self._check_models(name, [str(m) for m in _listify(config.generate.model)], result)
        elif kind is StepKind.PROCESS:
            assert config.process is not None
            if not config.process.workflow_file:
                result.add(
                    "process.workflow_file",
                    "workflow_file is required for process steps",
                    step=name,
                )
        elif kind is StepKind.SPECIALIZED_API:
            if config.input is None:
                result.add("input", "Missing required field 'input'", step=name, fix="Use 'NA' if not applicable.")
            if not config.model_list:
                result.add("model", "Missing required field 'model'", step=name)
            self._check_models(name, config.model_list, result)
        elif kind is StepKind.INLINE_LOOP:
            assert config.agentic_loop is not None
            if config.input is None:
                result.add("input", "Missing required field 'input'", step=name, fix="Use 'NA' if not applicable.")
            if not config.agentic_loop.steps:
                self._check_standard_fields(name, config, result)
            self.validate_loop(
                name, config.agentic_loop, result, require_steps=False, inherit_model=config.model
            )
        elif kind is StepKind.STANDARD:
            self._check_standard_fields(name, config, result)

        if config.input == "":
            result.add("input", "input field is empty", step=name, fix="Provide an input source, 'STDIN', or 'NA'.")
        if config.output == "":
            result.add("output", "output field is empty", step=name, fix="Use 'STDOUT' or a filename.")

    def _check_standard_fields(self, name: str, config: StepConfig, result: ValidationResult) -> None:
        if config.input is None:
            result.add("input", "Missing required field 'input'", step=name, fix="Add 'input:'. Use 'NA' if not applicable.")
        if not config.model_list:
            result.add("model", "Missing required field 'model'", step=name, fix="Add 'model:'. Use 'NA' if not applicable.")
        if not config.action_list:
            result.add("action", "Missing required field 'action'", step=name, fix="Add 'action:'.")
        if config.output is None:
            result.add("output", "Missing required field 'output'", step=name, fix="Add 'output:'. Use 'STDOUT' for console output.")
        self._check_models(name, config.model_list, result)

    def _check_models(self, name: str, models: list[str], result: ValidationResult) -> None:
        if self.known_model is None:
            return
        for model in models:
            if model != NA and not self.known_model(model):
                result.add("model", f"unsupported or unconfigured model '{model}'", step=name)

    def validate_loop(
        self,
        label: str,
        loop: AgenticLoopConfig,
        result: ValidationResult,
        *,
        require_steps: bool,
        inherit_model: str | list[str] | None = None,
    ) -> None:
        field_prefix = f"{label}." if label else ""
        condition = loop.exit_condition or ExitCondition.LLM_DECIDES.value
        if condition not in _EXIT_CONDITIONS:
            result.add(
                f"{field_prefix}exit_condition",
                f"invalid exit_condition '{condition}'",
                fix="Use 'llm_decides' or 'pattern_match'.",
            )
        elif condition == ExitCondition.PATTERN_MATCH.value:
            if not loop.exit_pattern:
                result.add(
                    f"{field_prefix}exit_pattern",
                    "exit_pattern is required when exit_condition is 'pattern_match'",
                )
            else:
                try:
                    re.compile(loop.exit_pattern)
                except re.error as e:
                    result.add(f"{field_prefix}exit_pattern", f"invalid regular expression: {e}")

        if loop.max_iterations <= 0:
            result.add(f"{field_prefix}max_iterations", "max_iterations must be positive")
        if loop.timeout_seconds < 0:
            result.add(f"{field_prefix}timeout_seconds", "timeout_seconds must not be negative")
        if loop.context_window < 0:
            result.add(f"{field_prefix}context_window", "context_window must not be negative")
        if loop.checkpoint_interval < 0:
            result.add(f"{field_prefix}checkpoint_interval", "checkpoint_interval must not be negative")
        if loop.max_history <= 0:
            result.add(f"{field_prefix}max_history", "max_history must be positive")
        if loop.stateful and not loop.name:
            result.add(
                f"{field_prefix}name",
                "stateful loops require a name",
                fix="Add 'name:' so the loop's checkpoint can be found again.",
            )
        if require_steps and not loop.steps:
            result.add(f"{field_prefix}steps", "loop has no steps defined")
        for sub in loop.steps:
            sub_config = sub.config
            if sub_config.model is None and inherit_model is not None:
                sub_config = sub_config.model_copy(update={"model": inherit_model})
            self.validate_step(f"{label}.{sub.name}" if label else sub.name, sub_config, result)

    def _validate_loops_block(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        for name, loop in graph.loops.items():
            self.validate_loop(f"loops.{name}", loop, result, require_steps=True)
            for dep in loop.depends_on:
                if dep not in graph.loops:
                    result.add(
                        f"loops.{name}.depends_on",
                        f"depends on unknown loop '{dep}'",
                        fix=f"Define '{dep}' under 'loops:' or remove it from depends_on.",
                    )
        for name in graph.execute_loops:
            if name not in graph.loops:
                result.add("execute_loops", f"references unknown loop '{name}'")

    def _validate_variable_references(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        exported = set(self.predefined_variables)
        steps: list[tuple[str, StepConfig]] = [(s.name, s.config) for s in graph.all_steps()]
        steps.extend(graph.deferred.items())
        for loop_name, loop in _all_loops(graph):
            if loop.output_state:
                exported.add(normalize_name(loop.output_state))
            steps.extend((f"{loop_name}.{s.name}", s.config) for s in loop.steps)
        for _, config in steps:
            exported |= exported_variables(config)

        for name, config in steps:
            for item in config.input_list:
                source, _ = parse_variable_assignment(item)
                if is_inline_content(source) or is_tool_input(source):
                    continue
                for var in _VARIABLE_REF_RE.findall(source):
                    if var not in exported:
                        result.add(
                            "input",
                            f"references variable ${var} but no step exports it",
                            step=name,
                            fix=f"Have a prior step write 'output: ${var}' or a loop set 'output_state: ${var}'.",
                        )
        for loop_name, loop in graph.loops.items():
            if loop.input_state and normalize_name(loop.input_state) not in exported:
                result.add(
                    f"loops.{loop_name}.input_state",
                    f"input_state {loop.input_state} is not exported by any step or loop",
                )

    def check_dependencies(self, graph: WorkflowGraph) -> None:
        """Raise DependencyError on collisions, cross-group reads or cycles."""
        producers: dict[str, set[str]] = {}

        for group, members in graph.parallel.items():
            group_outputs: dict[str, str] = {}
            for step in members:
                for resource in produced_resources(step.config):
                    other = group_outputs.get(resource)
                    if other is not None and other != step.name:
                        raise DependencyError(
                            f"parallel step '{other}' and '{step.name}' both produce the same "
                            f"output '{resource}' in group '{group}'"
                        )
                    group_outputs[resource] = step.name
            for step in members:
                for resource in consumed_resources(step.config):
                    producer = group_outputs.get(resource)
                    if producer is not None and producer != step.name:
                        raise DependencyError(
                            f"parallel step '{step.name}' depends on output '{resource}' from "
                            f"parallel step '{producer}' in the same group '{group}'"
                        )
            for resource, step_name in group_outputs.items():
                producers.setdefault(resource, set()).add(step_name)

        for step in graph.steps:
            for resource in produced_resources(step.config):
                producers.setdefault(resource, set()).add(step.name)

        edges: dict[str, set[str]] = {step.name: set() for step in graph.steps}
        for step in graph.steps:
            for resource in consumed_resources(step.config):
                for producer in producers.get(resource, ()):
                    if producer != step.name:
                        edges[step.name].add(producer)

        cycle = find_cycle(edges)
        if cycle is not None:
            raise DependencyError(
                f"circular dependency detected involving step '{cycle[0]}': {' -> '.join(cycle)}"
            )
        logger.debug(f"Dependency check passed for {len(edges)} sequential steps")


def _listify(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _all_loops(graph: WorkflowGraph) -> list[tuple[str, AgenticLoopConfig]]:
    loops = list(graph.loops.items())
    if graph.legacy_loop is not None:
        loops.append(("agentic-loop", graph.legacy_loop))
    return loops

