"""Dependency-ordered execution of named loops."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from agentic_workflow.errors import DependencyError, LoopError, WorkflowError
from agentic_workflow.workflow.agentic_loop import AgenticLoopEngine
from agentic_workflow.workflow.context import RunContext
from agentic_workflow.workflow.models import NA, AgenticLoopConfig
from agentic_workflow.workflow.validator import find_cycle

logger = logging.getLogger(__name__)


@dataclass
class LoopOutput:
    """Outcome record for one loop of the DAG."""

    loop_id: str
    name: str
    status: str = "pending"
    result: str = ""
    iterations: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exported: dict[str, str] = field(default_factory=dict)
    error: str | None = None


class LoopOrchestrator:
    """Runs the loops declared under ``loops:`` in dependency order.

    Args:
        loops: Loop configurations keyed by loop id, in declaration order.
        engine: Loop engine used to run each loop.
        execute_loops: Optional explicit order. Must respect ``depends_on``.
    """

    def __init__(
        self,
        loops: dict[str, AgenticLoopConfig],
        engine: AgenticLoopEngine,
        execute_loops: list[str] | None = None,
    ) -> None:
        self.loops = loops
        self.engine = engine
        self.execute_loops = list(execute_loops or [])
        self.outputs: dict[str, LoopOutput] = {}

    def build_graph(self) -> dict[str, list[str]]:
        graph: dict[str, list[str]] = {}
        for loop_id, config in self.loops.items():
            for dep in config.depends_on:
                if dep not in self.loops:
                    raise DependencyError(f"loop '{loop_id}' depends on unknown loop '{dep}'")
            graph[loop_id] = list(config.depends_on)
        return graph

    def topological_sort(self) -> list[str]:
        """Kahn's algorithm; ties are broken by declaration order."""
        graph = self.build_graph()
        in_degree = {loop_id: len(deps) for loop_id, deps in graph.items()}
        dependents: dict[str, list[str]] = {loop_id: [] for loop_id in graph}
        for loop_id, deps in graph.items():
            for dep in deps:
                dependents[dep].append(loop_id)

        ready = deque(loop_id for loop_id in graph if in_degree[loop_id] == 0)
        order: list[str] = []
        while ready:
            current = ready.popleft()
            order.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(graph):
            cycle = find_cycle(graph)
            path = " -> ".join(cycle) if cycle else ", ".join(sorted(set(graph) - set(order)))
            raise DependencyError(f"circular dependency detected between loops: {path}")
        return order

    def resolve_order(self) -> list[str]:
        if not self.execute_loops:
            return self.topological_sort()

        graph = self.build_graph()
        self.topological_sort()
        seen: set[str] = set()
        for loop_id in self.execute_loops:
            if loop_id not in graph:
                raise DependencyError(f"execute_loops references unknown loop '{loop_id}'")
            missing = [dep for dep in graph[loop_id] if dep not in seen]
            if missing:
                raise DependencyError(
                    f"loop '{loop_id}' is scheduled before its dependencies: {', '.join(missing)}"
                )
            seen.add(loop_id)
        return list(self.execute_loops)

    def prepare_input(self, loop_id: str, config: AgenticLoopConfig, ctx: RunContext) -> str:
        if config.input_state:
            value = ctx.variables.get(config.input_state)
            if value is None:
                raise LoopError(
                    loop_id, 0, f"input state '{config.input_state}' has not been published"
                )
            return value
        if config.depends_on:
            return self.outputs[config.depends_on[0]].result
        return NA

    def run(self, ctx: RunContext) -> dict[str, LoopOutput]:
        order = self.resolve_order()
        logger.info(f"Executing loops in order: {', '.join(order)}")

        for loop_id in order:
            config = self.loops[loop_id]
            record = LoopOutput(loop_id=loop_id, name=config.name or loop_id)
            self.outputs[loop_id] = record

            record.started_at = datetime.now(UTC)
            record.status = "running"
            try:
                initial_input = self.prepare_input(loop_id, config, ctx)
                result = self.engine.run(loop_id, config, initial_input, ctx)
            except WorkflowError as e:
                record.status = "failed"
                record.error = str(e)
                record.ended_at = datetime.now(UTC)
                logger.error(f"Loop {loop_id} failed: {e}", extra={"loop": loop_id})
                raise

            record.result = result.output
            record.iterations = result.iterations
            record.status = "completed"
            record.ended_at = datetime.now(UTC)
            if config.output_state:
                ctx.variables.set(config.output_state, result.output)
                record.exported[config.output_state.removeprefix("$")] = result.output
            logger.info(
                f"Loop {loop_id} completed after {result.iterations} iterations",
                extra={"loop": loop_id, "reason": result.reason},
            )
        return self.outputs

    def output(self, loop_id: str) -> LoopOutput | None:
        return self.outputs.get(loop_id)
