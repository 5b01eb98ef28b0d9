"""Concurrent execution of one parallel group."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from agentic_workflow.errors import StepExecutionError, WorkflowError
from agentic_workflow.workflow.context import RunContext
from agentic_workflow.workflow.dispatcher import StepDispatcher, StepResult
from agentic_workflow.workflow.models import Step

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Failure:
    step_name: str
    error: WorkflowError


class ParallelGroupExecutor:
    """Runs every member of a group on its own thread and waits for all of them.

    Each worker gets a forked ``RunContext``: the variable store is shared, the
    previous output is private. The first reported error is raised once every
    worker has finished; otherwise results are returned keyed by step name.
    """

    def __init__(self, dispatcher: StepDispatcher) -> None:
        self.dispatcher = dispatcher

    def run(self, group: str, steps: list[Step], ctx: RunContext) -> dict[str, StepResult]:
        if not steps:
            return {}

        size = len(steps)
        results: queue.Queue[tuple[str, StepResult]] = queue.Queue(maxsize=size)
        errors: queue.Queue[_Failure] = queue.Queue(maxsize=size)

        def worker(step: Step, worker_ctx: RunContext) -> None:
            try:
                results.put((step.name, self.dispatcher.run_with_deferrals(step, worker_ctx)))
            except WorkflowError as e:
                errors.put(_Failure(step.name, e))
            except Exception as e:
                errors.put(_Failure(step.name, StepExecutionError(step.name, str(e))))

        logger.info(f"Running parallel group {group} with {size} steps", extra={"group": group})
        threads = [
            threading.Thread(
                target=worker,
                args=(step, ctx.fork()),
                name=f"parallel-{group}-{step.name}",
                daemon=True,
            )
            for step in steps
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if not errors.empty():
            failure = errors.get_nowait()
            logger.error(
                f"Parallel step {failure.step_name} failed: {failure.error}",
                extra={"group": group, "step": failure.step_name},
            )
            raise failure.error

        merged: dict[str, StepResult] = {}
        while not results.empty():
            name, result = results.get_nowait()
            merged[name] = result
        logger.info(f"Parallel group {group} completed", extra={"group": group})
        return merged
