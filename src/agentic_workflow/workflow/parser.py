"""YAML workflow loading.

Top-level keys map step names to step configurations. Reserved keys:

- ``parallel``: mapping of group name to member steps
- ``defer``: steps only reachable through a deferred-step payload
- ``agentic-loop``: legacy single loop with ``config`` and ``steps``
- ``loops`` / ``execute_loops``: named loops and an optional explicit order

Any other key whose value is a mapping of step mappings is a parallel group.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from agentic_workflow.errors import WorkflowParseError
from agentic_workflow.workflow.models import (
    STEP_KEYS,
    AgenticLoopConfig,
    Step,
    StepConfig,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)

RESERVED_KEYS = frozenset({"parallel", "defer", "agentic-loop", "loops", "execute_loops"})


def load_workflow(path: Path) -> WorkflowGraph:
    """Read and parse a workflow file.

    Raises:
        WorkflowParseError: If the file cannot be read or does not describe a workflow.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise WorkflowParseError(f"failed to read workflow file {path}: {e}") from e
    return parse_workflow_text(text, source=str(path))


def parse_workflow_text(text: str, source: str = "<string>") -> WorkflowGraph:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowParseError(f"invalid YAML in {source}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise WorkflowParseError(f"{source}: expected a mapping of steps at the top level")
    return parse_workflow(data)


def is_parallel_group(value: Any) -> bool:
    """True if ``value`` is a mapping whose every entry looks like a step."""
    if not isinstance(value, dict) or not value:
        return False
    if any(key in STEP_KEYS for key in value):
        return False
    return all(
        isinstance(member, dict) and any(key in STEP_KEYS for key in member)
        for member in value.values()
    )


def _step(name: str, raw: Any) -> Step:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise WorkflowParseError(f"step '{name}' must be a mapping")
    try:
        return Step(name=str(name), config=StepConfig.model_validate(raw))
    except ValidationError as e:
        raise WorkflowParseError(f"failed to decode step '{name}': {e}") from e


def _loop(name: str, raw: Any) -> AgenticLoopConfig:
    if not isinstance(raw, dict):
        raise WorkflowParseError(f"loop '{name}' must be a mapping")
    try:
        return AgenticLoopConfig.model_validate(raw)
    except (ValidationError, ValueError) as e:
        raise WorkflowParseError(f"failed to decode loop '{name}': {e}") from e


def _group_members(group: str, raw: Any) -> list[Step]:
    if isinstance(raw, dict):
        return [_step(name, cfg) for name, cfg in raw.items()]
    if isinstance(raw, list):
        members: list[Step] = []
        for item in raw:
            if not isinstance(item, dict):
                raise WorkflowParseError(f"parallel group '{group}' has an invalid entry")
            members.extend(_step(name, cfg) for name, cfg in item.items())
        return members
    raise WorkflowParseError(f"parallel group '{group}' must be a mapping or a list")


def _legacy_loop(raw: Any) -> AgenticLoopConfig:
    if not isinstance(raw, dict):
        raise WorkflowParseError("agentic-loop must be a mapping")
    unknown = set(raw) - {"config", "steps"}
    if unknown:
        raise WorkflowParseError(
            f"unknown key '{sorted(unknown)[0]}' in agentic-loop block, expected 'config' or 'steps'"
        )
    if not isinstance(raw.get("config"), dict):
        raise WorkflowParseError("agentic-loop block requires a 'config' mapping")
    config = dict(raw["config"])
    config["steps"] = raw.get("steps")
    config.setdefault("name", "agentic-loop")
    return _loop("agentic-loop", config)


def parse_workflow(data: dict[str, Any]) -> WorkflowGraph:
    graph = WorkflowGraph()

    for key, value in data.items():
        name = str(key)
        if name == "parallel":
            if not isinstance(value, dict):
                raise WorkflowParseError("'parallel' must map group names to steps")
            for group, members in value.items():
                graph.parallel[str(group)] = _group_members(str(group), members)
        elif name == "defer":
            if not isinstance(value, dict):
                raise WorkflowParseError("'defer' must map step names to steps")
            for deferred_name, cfg in value.items():
                graph.deferred[str(deferred_name)] = _step(str(deferred_name), cfg).config
        elif name == "agentic-loop":
            graph.legacy_loop = _legacy_loop(value)
        elif name == "loops":
            if not isinstance(value, dict):
                raise WorkflowParseError("'loops' must map loop names to loop configurations")
            for loop_name, cfg in value.items():
                graph.loops[str(loop_name)] = _loop(str(loop_name), cfg)
        elif name == "execute_loops":
            if not isinstance(value, list):
                raise WorkflowParseError("'execute_loops' must be a list of loop names")
            graph.execute_loops = [str(v) for v in value]
        elif is_parallel_group(value):
            graph.parallel[name] = _group_members(name, value)
        else:
            graph.steps.append(_step(name, value))

    logger.debug(
        f"Parsed workflow: {len(graph.steps)} steps, {len(graph.parallel)} parallel groups, "
        f"{len(graph.loops)} loops"
    )
    return graph
