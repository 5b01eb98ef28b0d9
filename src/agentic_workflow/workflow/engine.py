"""Top-level workflow execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from agentic_workflow.errors import WorkflowError
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.dispatcher import StepDispatcher, StepResult, SubworkflowOutcome
from agentic_workflow.workflow.loop_orchestrator import LoopOrchestrator, LoopOutput
from agentic_workflow.workflow.loop_state import LoopStateManager
from agentic_workflow.workflow.models import NA, WorkflowGraph
from agentic_workflow.workflow.parallel import ParallelGroupExecutor
from agentic_workflow.workflow.parser import load_workflow
from agentic_workflow.workflow.validator import GraphValidator
from agentic_workflow.workflow.variables import VariableStore

logger = logging.getLogger(__name__)

MAX_SUBWORKFLOW_DEPTH = 10


@dataclass
class RunResult:
    last_output: str
    variables: dict[str, str]
    parallel_results: dict[str, StepResult] = field(default_factory=dict)
    loop_outputs: dict[str, LoopOutput] = field(default_factory=dict)


class WorkflowEngine:
    """Validates and runs one parsed workflow.

    Order of execution: parallel groups first. With a ``loops:`` block the
    sequential steps then run as pre-loop steps followed by the loop DAG;
    otherwise the legacy ``agentic-loop`` runs before the sequential steps.

    Args:
        graph: Parsed workflow.
        services: External collaborators.
        workflow_file: Source file, used for relative paths and checksums.
        cli_variables: Values for ``{{ name }}`` placeholders.
        variables: Initial variable store (sub-workflow inputs).
        last_output: Initial piped input.
        depth: Sub-workflow nesting depth.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        services: Services,
        workflow_file: Path | None = None,
        cli_variables: dict[str, str] | None = None,
        variables: VariableStore | None = None,
        last_output: str = "",
        depth: int = 0,
        state_manager: LoopStateManager | None = None,
    ) -> None:
        self.graph = graph
        self.services = services
        self.workflow_file = workflow_file
        self.cli_variables = dict(cli_variables or {})
        self.variables = variables if variables is not None else VariableStore()
        self.last_output = last_output
        self.depth = depth
        self.state_manager = state_manager or LoopStateManager(services.config.state.loop_state_dir)
        self.dispatcher = StepDispatcher(
            services,
            deferred=graph.deferred,
            subworkflow_runner=self._run_subworkflow,
            state_manager=self.state_manager,
        )

    @classmethod
    def from_file(
        cls,
        path: Path,
        services: Services,
        *,
        cli_variables: dict[str, str] | None = None,
        variables: VariableStore | None = None,
        last_output: str = "",
        depth: int = 0,
        state_manager: LoopStateManager | None = None,
    ) -> WorkflowEngine:
        logger.info(f"Loading workflow: {path}")
        return cls(
            load_workflow(path),
            services,
            workflow_file=path.resolve(),
            cli_variables=cli_variables,
            variables=variables,
            last_output=last_output,
            depth=depth,
            state_manager=state_manager,
        )

    def validate(self) -> None:
        """Raise ``ConfigurationError`` or ``DependencyError`` if the graph is unsound."""
        validator = GraphValidator(
            known_model=self.services.providers.is_known,
            predefined_variables=self.variables.snapshot().keys(),
        )
        validator.validate_or_raise(self.graph)

    def run(self) -> RunResult:
        self.validate()
        ctx = RunContext(
            variables=self.variables,
            cli_variables=dict(self.cli_variables),
            last_output=self.last_output,
            workflow_file=self.workflow_file,
            runtime_dir=self.services.config.runtime_dir,
            depth=self.depth,
        )
        result = RunResult(last_output="", variables={})

        if self.graph.parallel:
            executor = ParallelGroupExecutor(self.dispatcher)
            for group, members in self.graph.parallel.items():
                result.parallel_results.update(executor.run(group, members, ctx))

        if self.graph.loops:
            self._run_sequential(ctx)
            orchestrator = LoopOrchestrator(
                self.graph.loops, self.dispatcher.loop_engine, self.graph.execute_loops
            )
            result.loop_outputs = orchestrator.run(ctx)
            if result.loop_outputs:
                ctx.last_output = list(result.loop_outputs.values())[-1].result
        else:
            if self.graph.legacy_loop is not None:
                self._run_legacy_loop(ctx)
            self._run_sequential(ctx)

        result.last_output = ctx.last_output
        result.variables = ctx.variables.snapshot()
        logger.info("Workflow completed", extra={"depth": self.depth})
        return result

    def _run_sequential(self, ctx: RunContext) -> None:
        for step in self.graph.steps:
            self.dispatcher.run_with_deferrals(step, ctx)

    def _run_legacy_loop(self, ctx: RunContext) -> None:
        loop = self.graph.legacy_loop
        assert loop is not None
        initial_input = ctx.last_output or NA
        if loop.input_state:
            initial_input = ctx.variables.get(loop.input_state, initial_input) or initial_input

        outcome = self.dispatcher.loop_engine.run(loop.name or "agentic-loop", loop, initial_input, ctx)
        ctx.last_output = outcome.output
        if loop.output_state:
            ctx.variables.set(loop.output_state, outcome.output)

    def _run_subworkflow(
        self,
        path: Path,
        inputs: dict[str, str],
        stdin: str | None,
        ctx: RunContext,
    ) -> SubworkflowOutcome:
        if ctx.depth + 1 > MAX_SUBWORKFLOW_DEPTH:
            raise WorkflowError(
                f"sub-workflow {path} exceeds the maximum nesting depth of {MAX_SUBWORKFLOW_DEPTH}"
            )
        child = WorkflowEngine.from_file(
            path,
            self.services,
            cli_variables=ctx.cli_variables,
            variables=VariableStore(inputs),
            last_output=stdin or "",
            depth=ctx.depth + 1,
            state_manager=self.state_manager,
        )
        outcome = child.run()
        return SubworkflowOutcome(last_output=outcome.last_output, variables=outcome.variables)
