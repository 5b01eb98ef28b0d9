"""Iterative execution of a loop's sub-steps until an exit condition holds."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from agentic_workflow.errors import (
    ChecksumMismatchError,
    CorruptStateError,
    LoopError,
    LoopStateError,
    LoopTimeoutError,
    NoSavedStateError,
    WorkflowError,
)
from agentic_workflow.workflow.context import RunContext
from agentic_workflow.workflow.loop_state import (
    LoopIteration,
    LoopState,
    LoopStateManager,
    LoopStatus,
    compute_workflow_checksum,
    validate_workflow_checksum,
)
from agentic_workflow.workflow.models import AgenticLoopConfig, ExitCondition

if TYPE_CHECKING:
    from agentic_workflow.workflow.dispatcher import StepDispatcher

logger = logging.getLogger(__name__)

COMPLETION_MARKERS = (
    re.compile(r"(?i)^\s*DONE\.?\s*$"),
    re.compile(r"(?i)^\s*COMPLETE\.?\s*$"),
    re.compile(r"(?i)^\s*FINISHED\.?\s*$"),
    re.compile(r"(?i)TASK[_\s-]?COMPLETE"),
)


@dataclass
class LoopContext:
    """In-memory state of one loop invocation."""

    name: str
    max_iterations: int
    iteration: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    previous_output: str = ""
    history: list[LoopIteration] = field(default_factory=list)

    def record(self, output: str, max_history: int) -> None:
        self.history.append(LoopIteration(index=self.iteration, output=output))
        if max_history > 0 and len(self.history) > max_history:
            del self.history[: len(self.history) - max_history]
        self.previous_output = output


@dataclass(frozen=True, slots=True)
class LoopResult:
    output: str
    iterations: int
    reason: str


def build_iteration_context(loop_ctx: LoopContext, window: int) -> str:
    """Render recent history followed by the previous output.

    On the first iteration (empty history) this is just the previous output,
    which holds the loop's initial input. A window of 0 renders no history.
    """
    if not loop_ctx.history or window <= 0:
        return loop_ctx.previous_output

    recent = loop_ctx.history[-window:]
    parts = ["=== Previous Iterations ===\n"]
    for entry in recent:
        parts.append(f"--- Iteration {entry.index} ---\nOutput: {entry.output}\n\n")
    parts.append("=== Current Iteration ===\n")
    parts.append(loop_ctx.previous_output)
    return "".join(parts)


def check_exit_condition(config: AgenticLoopConfig, output: str) -> bool:
    if not output.strip():
        return False

    condition = config.exit_condition or ExitCondition.LLM_DECIDES.value
    if condition == ExitCondition.PATTERN_MATCH.value:
        if not config.exit_pattern:
            return False
        return re.search(config.exit_pattern, output) is not None

    trimmed = output.strip()
    return any(marker.search(trimmed) for marker in COMPLETION_MARKERS)


class AgenticLoopEngine:
    """Runs loops whose sub-steps are executed through a ``StepDispatcher``.

    Args:
        dispatcher: Executes each sub-step.
        state_manager: Checkpoint store. Required only for stateful loops.
        clock: Monotonic clock used for the timeout deadline.
    """

    def __init__(
        self,
        dispatcher: StepDispatcher,
        state_manager: LoopStateManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dispatcher = dispatcher
        self.state_manager = state_manager
        self.clock = clock

    def run(
        self,
        name: str,
        config: AgenticLoopConfig,
        initial_input: str,
        ctx: RunContext,
    ) -> LoopResult:
        if not config.steps:
            raise LoopError(name, 0, "agentic loop has no steps defined")

        state_name = config.name or name
        stateful = config.stateful and self.state_manager is not None
        checksum = self._workflow_checksum(ctx.workflow_file) if stateful else ""

        loop_ctx = LoopContext(name=state_name, max_iterations=config.max_iterations)
        loop_ctx.previous_output = initial_input
        if stateful:
            self._resume(loop_ctx, ctx)

        started = self.clock()
        logger.info(
            f"Starting agentic loop {state_name}",
            extra={"loop": state_name, "max_iterations": config.max_iterations},
        )

        while loop_ctx.iteration < config.max_iterations:
            if config.timeout_seconds > 0 and self.clock() - started >= config.timeout_seconds:
                if stateful:
                    self._checkpoint(loop_ctx, config, ctx, checksum, LoopStatus.PAUSED)
                raise LoopTimeoutError(
                    state_name, loop_ctx.iteration, config.timeout_seconds, loop_ctx.previous_output
                )

            loop_ctx.iteration += 1
            self._publish_variables(loop_ctx, ctx, started)
            iteration_input = build_iteration_context(loop_ctx, config.context_window)

            try:
                output = self._run_iteration(config, iteration_input, ctx)
            except WorkflowError as e:
                if stateful:
                    self._checkpoint(loop_ctx, config, ctx, checksum, LoopStatus.FAILED)
                raise LoopError(state_name, loop_ctx.iteration, str(e)) from e

            loop_ctx.record(output, config.max_history)
            logger.debug(
                f"Loop {state_name} iteration {loop_ctx.iteration} produced {len(output)} characters",
                extra={"loop": state_name, "iteration": loop_ctx.iteration},
            )

            interval = config.effective_checkpoint_interval
            if stateful and interval > 0 and loop_ctx.iteration % interval == 0:
                self._checkpoint(loop_ctx, config, ctx, checksum, LoopStatus.RUNNING)

            if check_exit_condition(config, output):
                logger.info(
                    f"Loop {state_name} exit condition met at iteration {loop_ctx.iteration}",
                    extra={"loop": state_name, "iteration": loop_ctx.iteration},
                )
                return self._finish(loop_ctx, config, ctx, checksum, stateful, "exit_condition")

        logger.info(
            f"Loop {state_name} reached max iterations ({config.max_iterations})",
            extra={"loop": state_name},
        )
        return self._finish(loop_ctx, config, ctx, checksum, stateful, "max_iterations")

    def _run_iteration(self, config: AgenticLoopConfig, iteration_input: str, ctx: RunContext) -> str:
        ctx.last_output = iteration_input
        for step in config.steps:
            result = self.dispatcher.run_with_deferrals(step, ctx)
            ctx.last_output = result.text
        return ctx.last_output

    def _publish_variables(self, loop_ctx: LoopContext, ctx: RunContext, started: float) -> None:
        ctx.loop_variables.update(
            {
                "loop.iteration": str(loop_ctx.iteration),
                "loop.previous_output": loop_ctx.previous_output,
                "loop.total_iterations": str(loop_ctx.max_iterations),
                "loop.max_iterations": str(loop_ctx.max_iterations),
                "loop.elapsed_seconds": str(int(self.clock() - started)),
            }
        )

    def _finish(
        self,
        loop_ctx: LoopContext,
        config: AgenticLoopConfig,
        ctx: RunContext,
        checksum: str,
        stateful: bool,
        reason: str,
    ) -> LoopResult:
        if stateful:
            self._checkpoint(loop_ctx, config, ctx, checksum, LoopStatus.COMPLETED)
        return LoopResult(output=loop_ctx.previous_output, iterations=loop_ctx.iteration, reason=reason)

    def _workflow_checksum(self, workflow_file: Path | None) -> str:
        if workflow_file is None or not workflow_file.exists():
            return ""
        return compute_workflow_checksum(workflow_file)

    def _resume(self, loop_ctx: LoopContext, ctx: RunContext) -> None:
        assert self.state_manager is not None
        try:
            state = self.state_manager.load_state(loop_ctx.name)
        except NoSavedStateError:
            return
        except CorruptStateError as e:
            logger.warning(f"Ignoring saved state: {e}", extra={"loop": loop_ctx.name})
            return

        if state.status == LoopStatus.COMPLETED:
            logger.info(f"Saved state for loop {loop_ctx.name} is completed, starting fresh")
            return
        try:
            validate_workflow_checksum(state)
        except ChecksumMismatchError as e:
            logger.warning(f"Not resuming: {e}", extra={"loop": loop_ctx.name})
            return

        loop_ctx.iteration = state.iteration
        loop_ctx.start_time = state.start_time
        loop_ctx.previous_output = state.previous_output
        loop_ctx.history = list(state.history)
        ctx.variables.update(state.variables)
        logger.info(
            f"Resuming loop {loop_ctx.name} from iteration {state.iteration}",
            extra={"loop": loop_ctx.name, "iteration": state.iteration},
        )

    def _checkpoint(
        self,
        loop_ctx: LoopContext,
        config: AgenticLoopConfig,
        ctx: RunContext,
        checksum: str,
        status: LoopStatus,
    ) -> None:
        assert self.state_manager is not None
        state = LoopState(
            loop_name=loop_ctx.name,
            iteration=loop_ctx.iteration,
            max_iterations=config.max_iterations,
            start_time=loop_ctx.start_time,
            previous_output=loop_ctx.previous_output,
            history=list(loop_ctx.history),
            variables=ctx.variables.snapshot(),
            status=status,
            exit_condition=config.exit_condition,
            exit_pattern=config.exit_pattern,
            workflow_file=str(ctx.workflow_file) if ctx.workflow_file and checksum else "",
            workflow_checksum=checksum,
        )
        try:
            self.state_manager.save_state(state)
        except LoopStateError as e:
            logger.warning(f"Checkpoint failed: {e}", extra={"loop": loop_ctx.name})
