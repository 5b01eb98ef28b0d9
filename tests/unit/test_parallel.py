"""Unit tests for parallel group execution."""

from __future__ import annotations

import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from agentic_workflow.errors import StepExecutionError
from agentic_workflow.llm.registry import ProviderRegistry
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.dispatcher import StepDispatcher
from agentic_workflow.workflow.models import Step
from agentic_workflow.workflow.parallel import ParallelGroupExecutor
from tests.conftest import FakeProvider


def _step(name: str, **config: object) -> Step:
    return Step.model_validate({"name": name, "config": config})


def test_group_results_are_keyed_by_step_name(
    services: Services, fake_provider: FakeProvider, run_context: RunContext
) -> None:
    fake_provider.respond = lambda prompt: prompt.upper()
    steps = [
        _step("left", input="NA", model="fake-model", action="left side", output="$LEFT"),
        _step("right", input="NA", model="fake-model", action="right side", output="$RIGHT"),
    ]

    results = ParallelGroupExecutor(StepDispatcher(services)).run("g", steps, run_context)

    assert set(results) == {"left", "right"}
    assert results["left"].text == "LEFT SIDE"
    assert run_context.variables.get("RIGHT") == "RIGHT SIDE"


def test_members_run_concurrently(services: Services, run_context: RunContext) -> None:
    barrier = threading.Barrier(3, timeout=5)

    class BarrierProvider(FakeProvider):
        def generate(self, prompt: str, model: str, file_path: Path | None = None, **kwargs: Any) -> str:
            barrier.wait()
            return prompt

    steps = [_step(f"s{i}", input="NA", model="fake-model", action=f"a{i}", output="STDOUT") for i in range(3)]
    concurrent = replace(services, providers=ProviderRegistry([BarrierProvider()]))

    results = ParallelGroupExecutor(StepDispatcher(concurrent)).run("g", steps, run_context)

    assert {name: r.text for name, r in results.items()} == {"s0": "a0", "s1": "a1", "s2": "a2"}


def test_error_is_raised_after_all_members_finish(
    services: Services, run_context: RunContext
) -> None:
    steps = [
        _step("broken", input="$MISSING", model="fake-model", action="x", output="STDOUT"),
        _step("fine", input="NA", model="fake-model", action="ok", output="$FINE"),
    ]

    with pytest.raises(StepExecutionError, match="MISSING"):
        ParallelGroupExecutor(StepDispatcher(services)).run("g", steps, run_context)

    assert run_context.variables.get("FINE") == "echo: ok"


def test_parent_previous_output_is_untouched(services: Services, run_context: RunContext) -> None:
    run_context.last_output = "before"
    steps = [
        _step("a", input="STDIN", model="NA", action="x", output="STDOUT"),
        _step("b", input="NA", model="fake-model", action="y", output="STDOUT"),
    ]

    results = ParallelGroupExecutor(StepDispatcher(services)).run("g", steps, run_context)

    assert results["a"].text == "before"
    assert run_context.last_output == "before"


def test_empty_group(services: Services, run_context: RunContext) -> None:
    assert ParallelGroupExecutor(StepDispatcher(services)).run("g", [], run_context) == {}


def test_inline_loops_in_one_group_keep_their_own_loop_variables(
    services: Services, run_context: RunContext
) -> None:
    fast_finished = threading.Event()

    class OrderingProvider(FakeProvider):
        def generate(self, prompt: str, model: str, file_path: Path | None = None, **kwargs: Any) -> str:
            if "fast-iter=4" in prompt:
                fast_finished.set()
            if "slow-wait" in prompt:
                fast_finished.wait(timeout=5)
            return prompt

    slow = _step(
        "slow",
        input="NA",
        model="fake-model",
        action="slow parent",
        output="STDOUT",
        agentic_loop={
            "max_iterations": 1,
            "steps": {
                "wait": {"input": "STDIN", "model": "fake-model", "action": "slow-wait", "output": "STDOUT"},
                "report": {
                    "input": "STDIN",
                    "model": "fake-model",
                    "action": "slow-iter={{ loop.iteration }}",
                    "output": "STDOUT",
                },
            },
        },
    )
    fast = _step(
        "fast",
        input="NA",
        model="fake-model",
        action="fast-iter={{ loop.iteration }}",
        output="STDOUT",
        agentic_loop={"max_iterations": 4},
    )
    ordered = replace(services, providers=ProviderRegistry([OrderingProvider()]))

    results = ParallelGroupExecutor(StepDispatcher(ordered)).run("g", [slow, fast], run_context)

    assert fast_finished.is_set()
    assert results["slow"].text.endswith("Action: slow-iter=1")
    assert results["fast"].text == "fast-iter=4"
    assert "loop.iteration" not in run_context.loop_variables
