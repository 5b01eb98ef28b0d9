"""End-to-end tests for workflow execution."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentic_workflow.errors import ConfigurationError, DependencyError, WorkflowError
from agentic_workflow.workflow.context import Services
from agentic_workflow.workflow.engine import WorkflowEngine
from agentic_workflow.workflow.parser import parse_workflow_text
from tests.conftest import FakeProvider


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_variable_chains_exact_output_between_steps(
    tmp_path: Path, services: Services, fake_provider: FakeProvider
) -> None:
    workflow = _write(
        tmp_path,
        "chain.yaml",
        """
write:
  input: NA
  model: fake-model
  action: Write a haiku
  output: $DRAFT
review:
  input: $DRAFT
  model: fake-model
  action: Review it
  output: review.md
""",
    )
    fake_provider.responses = ["an old silent pond", "lovely"]

    result = WorkflowEngine.from_file(workflow, services).run()

    assert fake_provider.prompts[0] == "Write a haiku"
    assert fake_provider.prompts[1].startswith("Input:\nan old silent pond\nAction: [Output Handling]")
    assert fake_provider.prompts[1].endswith("Review it")
    assert result.last_output == "lovely"
    assert result.variables["DRAFT"] == "an old silent pond"
    assert (tmp_path / "review.md").read_text(encoding="utf-8") == "lovely"


def test_cli_variables_fill_placeholders(services: Services, fake_provider: FakeProvider) -> None:
    graph = parse_workflow_text(
        """
greet:
  input: NA
  model: fake-model
  action: Say hi to {{ name }}
  output: STDOUT
"""
    )

    WorkflowEngine(graph, services, cli_variables={"name": "Ada"}).run()

    assert fake_provider.prompts == ["Say hi to Ada"]


def test_piped_input_reaches_first_step(services: Services, fake_provider: FakeProvider) -> None:
    graph = parse_workflow_text(
        """
summarize:
  input: STDIN
  model: fake-model
  action: Summarize
  output: STDOUT
"""
    )

    WorkflowEngine(graph, services, last_output="piped text").run()

    assert fake_provider.prompts == ["Input:\npiped text\nAction: Summarize"]


def test_invalid_workflow_fails_before_any_model_call(
    services: Services, fake_provider: FakeProvider
) -> None:
    graph = parse_workflow_text(
        """
a:
  input: NA
  model: mystery-model
  action: x
  output: STDOUT
b:
  input: NA
  model: fake-model
  action: y
"""
    )

    with pytest.raises(ConfigurationError) as exc_info:
        WorkflowEngine(graph, services).run()

    assert len(exc_info.value.result.issues) == 2
    assert fake_provider.prompts == []


def test_dependency_cycle_fails_before_any_model_call(
    services: Services, fake_provider: FakeProvider
) -> None:
    graph = parse_workflow_text(
        """
a:
  input: b.txt
  model: fake-model
  action: x
  output: a.txt
b:
  input: a.txt
  model: fake-model
  action: x
  output: b.txt
"""
    )

    with pytest.raises(DependencyError):
        WorkflowEngine(graph, services).run()
    assert fake_provider.prompts == []


def test_parallel_groups_run_before_sequential_steps(
    services: Services, fake_provider: FakeProvider
) -> None:
    graph = parse_workflow_text(
        """
parallel:
  research:
    pros:
      input: NA
      model: fake-model
      action: List pros
      output: $PROS
    cons:
      input: NA
      model: fake-model
      action: List cons
      output: $CONS
combine:
  input: [$PROS, $CONS]
  model: NA
  action: merge
  output: STDOUT
"""
    )

    result = WorkflowEngine(graph, services).run()

    assert set(result.parallel_results) == {"pros", "cons"}
    assert result.last_output == "File: $PROS\necho: List pros\n\nFile: $CONS\necho: List cons"


def test_legacy_loop_runs_before_sequential_steps(
    services: Services, fake_provider: FakeProvider
) -> None:
    graph = parse_workflow_text(
        """
agentic-loop:
  config:
    max_iterations: 2
    output_state: $LOOP_RESULT
  steps:
    refine:
      input: STDIN
      model: fake-model
      action: Refine
      output: STDOUT
report:
  input: $LOOP_RESULT
  model: NA
  action: x
  output: STDOUT
"""
    )
    fake_provider.responses = ["v1", "v2"]

    result = WorkflowEngine(graph, services).run()

    assert len(fake_provider.prompts) == 2
    assert result.variables["LOOP_RESULT"] == "v2"
    assert result.last_output == "v2"


def test_pre_loop_steps_then_loop_dag(services: Services, fake_provider: FakeProvider) -> None:
    graph = parse_workflow_text(
        """
seed:
  input: NA
  model: fake-model
  action: Pick a topic
  output: $TOPIC
loops:
  expand:
    max_iterations: 1
    input_state: $TOPIC
    output_state: $EXPANDED
    steps:
      grow:
        input: STDIN
        model: fake-model
        action: Expand
        output: STDOUT
  polish:
    max_iterations: 1
    depends_on: [expand]
    steps:
      shine:
        input: STDIN
        model: fake-model
        action: Polish
        output: STDOUT
"""
    )
    fake_provider.responses = ["bees", "bees are great", "Bees are great!"]

    result = WorkflowEngine(graph, services).run()

    assert fake_provider.prompts == [
        "Pick a topic",
        "Input:\nbees\nAction: Expand",
        "Input:\nbees are great\nAction: Polish",
    ]
    assert list(result.loop_outputs) == ["expand", "polish"]
    assert result.variables["EXPANDED"] == "bees are great"
    assert result.last_output == "Bees are great!"


def test_process_step_runs_sub_workflow_and_captures_outputs(
    tmp_path: Path, services: Services, fake_provider: FakeProvider
) -> None:
    _write(
        tmp_path,
        "child.yaml",
        """
answer:
  input: $QUESTION
  model: fake-model
  action: Answer
  output: $ANSWER
""",
    )
    parent = _write(
        tmp_path,
        "parent.yaml",
        """
delegate:
  input: NA
  process:
    workflow_file: child.yaml
    inputs:
      QUESTION: why is the sky blue
    capture_outputs: [$ANSWER]
show:
  input: $ANSWER
  model: NA
  action: x
  output: STDOUT
""",
    )
    fake_provider.responses = ["scattering"]

    result = WorkflowEngine.from_file(parent, services).run()

    assert fake_provider.prompts == ["Input:\nwhy is the sky blue\nAction: Answer"]
    assert result.variables["ANSWER"] == "scattering"
    assert result.last_output == "scattering"


def test_self_referencing_sub_workflow_hits_depth_limit(tmp_path: Path, services: Services) -> None:
    workflow = _write(
        tmp_path,
        "recursive.yaml",
        """
again:
  input: NA
  process:
    workflow_file: recursive.yaml
""",
    )

    with pytest.raises(WorkflowError, match="maximum nesting depth"):
        WorkflowEngine.from_file(workflow, services).run()
