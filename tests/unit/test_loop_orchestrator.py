"""Unit tests for dependency-ordered loop execution."""

from __future__ import annotations

import pytest

from agentic_workflow.errors import DependencyError, LoopError
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.dispatcher import StepDispatcher
from agentic_workflow.workflow.loop_orchestrator import LoopOrchestrator
from agentic_workflow.workflow.models import AgenticLoopConfig
from agentic_workflow.workflow.parser import parse_workflow_text
from tests.conftest import FakeProvider


def _loop(action: str, **settings: object) -> AgenticLoopConfig:
    step = {"work": {"input": "STDIN", "model": "fake-model", "action": action, "output": "STDOUT"}}
    return AgenticLoopConfig.model_validate({"max_iterations": 1, "steps": step, **settings})


def _orchestrator(
    services: Services, loops: dict[str, AgenticLoopConfig], order: list[str] | None = None
) -> LoopOrchestrator:
    return LoopOrchestrator(loops, StepDispatcher(services).loop_engine, order)


def test_topological_sort_respects_dependencies(services: Services) -> None:
    loops = {
        "report": _loop("Report", depends_on=["research", "draft"]),
        "draft": _loop("Draft", depends_on=["research"]),
        "research": _loop("Research"),
    }

    assert _orchestrator(services, loops).topological_sort() == ["research", "draft", "report"]


def test_independent_loops_keep_declaration_order(services: Services) -> None:
    loops = {"b": _loop("B"), "a": _loop("A"), "c": _loop("C")}

    assert _orchestrator(services, loops).topological_sort() == ["b", "a", "c"]


def test_cycle_is_reported_with_its_path(services: Services) -> None:
    loops = {"a": _loop("A", depends_on=["b"]), "b": _loop("B", depends_on=["a"])}

    with pytest.raises(DependencyError, match="circular dependency detected between loops: a -> b -> a"):
        _orchestrator(services, loops).topological_sort()


def test_unknown_dependency(services: Services) -> None:
    loops = {"a": _loop("A", depends_on=["ghost"])}

    with pytest.raises(DependencyError, match="unknown loop 'ghost'"):
        _orchestrator(services, loops).build_graph()


def test_explicit_order_must_respect_dependencies(services: Services) -> None:
    loops = {"first": _loop("A"), "second": _loop("B", depends_on=["first"])}

    assert _orchestrator(services, loops, ["first", "second"]).resolve_order() == ["first", "second"]
    with pytest.raises(DependencyError, match="scheduled before its dependencies: first"):
        _orchestrator(services, loops, ["second", "first"]).resolve_order()
    with pytest.raises(DependencyError, match="unknown loop 'third'"):
        _orchestrator(services, loops, ["first", "third"]).resolve_order()


def test_run_chains_loops_through_published_state(
    services: Services, fake_provider: FakeProvider, run_context: RunContext
) -> None:
    graph = parse_workflow_text(
        """
loops:
  research:
    max_iterations: 1
    output_state: $FACTS
    steps:
      gather:
        input: STDIN
        model: fake-model
        action: Research
        output: STDOUT
  draft:
    max_iterations: 1
    depends_on: [research]
    input_state: $FACTS
    steps:
      write:
        input: STDIN
        model: fake-model
        action: Draft
        output: STDOUT
"""
    )
    fake_provider.responses = ["facts", "draft text"]

    outputs = _orchestrator(services, graph.loops).run(run_context)

    assert fake_provider.prompts == ["Input:\nNA\nAction: Research", "Input:\nfacts\nAction: Draft"]
    assert outputs["research"].exported == {"FACTS": "facts"}
    assert outputs["draft"].result == "draft text"
    assert outputs["draft"].status == "completed"
    assert outputs["draft"].iterations == 1
    assert run_context.variables.get("FACTS") == "facts"


def test_dependency_result_seeds_loop_without_input_state(
    services: Services, fake_provider: FakeProvider, run_context: RunContext
) -> None:
    fake_provider.responses = ["outline", "final"]
    loops = {"plan": _loop("Plan"), "write": _loop("Write", depends_on=["plan"])}

    orchestrator = _orchestrator(services, loops)
    orchestrator.run(run_context)

    assert fake_provider.prompts[1] == "Input:\noutline\nAction: Write"
    assert orchestrator.output("write").result == "final"  # type: ignore[union-attr]
    assert orchestrator.output("missing") is None


def test_unpublished_input_state_fails_the_loop(services: Services, run_context: RunContext) -> None:
    loops = {"needy": _loop("Use", input_state="$NOWHERE")}
    orchestrator = _orchestrator(services, loops)

    with pytest.raises(LoopError, match="has not been published"):
        orchestrator.run(run_context)

    record = orchestrator.output("needy")
    assert record is not None
    assert record.status == "failed"
    assert record.ended_at is not None
