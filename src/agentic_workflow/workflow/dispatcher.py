"""Step dispatch.

A step is classified into one ``StepKind`` and handed to the matching handler.
Every handler resolves its inputs, substitutes variables, calls its
collaborator and returns a ``StepResult``.
"""

from __future__ import annotations

import json
import logging
import re
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentic_workflow.errors import (
    BatchProcessingError,
    StepExecutionError,
    WorkflowError,
    WorkflowParseError,
)
from agentic_workflow.workflow.agentic_loop import AgenticLoopEngine
from agentic_workflow.workflow.collaborators import index_variable_name
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.inputs import InputItem, combine_contents, resolve_inputs, substitute
from agentic_workflow.workflow.loop_state import LoopStateManager
from agentic_workflow.workflow.models import (
    MEMORY,
    NA,
    STDIN,
    STDOUT,
    Step,
    StepConfig,
    StepKind,
)
from agentic_workflow.workflow.outputs import OutputRouter
from agentic_workflow.workflow.parser import parse_workflow_text
from agentic_workflow.workflow.tools import is_tool_output
from agentic_workflow.workflow.validator import GraphValidator

logger = logging.getLogger(__name__)

MAX_DEFERRED_CHAIN = 100

OUTPUT_HANDLING_NOTE = (
    "[Output Handling]\n"
    "Simply output the content directly. Do not attempt to write files - "
    "your output will be captured automatically.\n\n"
)


@dataclass(frozen=True, slots=True)
class IndividualOutput:
    input_path: str
    output: str


@dataclass(frozen=True, slots=True)
class StepResult:
    """Normalized result: one combined output, or one output per input."""

    combined: str = ""
    individual: tuple[IndividualOutput, ...] = ()

    @property
    def text(self) -> str:
        if self.individual:
            return "\n\n".join(r.output for r in self.individual)
        return self.combined


@dataclass(frozen=True, slots=True)
class SubworkflowOutcome:
    last_output: str
    variables: dict[str, str]


SubworkflowRunner = Callable[[Path, dict[str, str], str | None, RunContext], SubworkflowOutcome]


def build_prompt(content: str, action: str) -> str:
    if not content:
        return action
    return f"Input:\n{content}\nAction: {action}"


def extract_yaml(response: str) -> str:
    """Pull workflow YAML out of a model reply that may wrap it in a code fence."""
    fenced = re.search(r"```ya?ml\s*\n(.*?)```", response, re.DOTALL)
    if fenced:
        return fenced.group(1).strip()
    parts = response.split("```")
    if len(parts) >= 3:
        block = parts[1].strip()
        first, _, rest = block.partition("\n")
        return rest.strip() if ":" not in first else block
    return response.strip()


def parse_deferred_call(output: str, deferred: Mapping[str, StepConfig]) -> tuple[str, str] | None:
    """Return ``(step_name, input)`` if ``output`` is a call to a deferred step."""
    trimmed = output.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    name = payload.get("step")
    if not isinstance(name, str) or name not in deferred:
        return None
    value = payload.get("input", "")
    return name, value if isinstance(value, str) else json.dumps(value)


class StepDispatcher:
    """Routes steps to their kind-specific handlers.

    Args:
        services: External collaborators.
        deferred: Steps addressable through a deferred-step payload.
        subworkflow_runner: Runs a sub-workflow file for ``process`` steps.
        state_manager: Checkpoint store for stateful inline loops.
    """

    def __init__(
        self,
        services: Services,
        deferred: Mapping[str, StepConfig] | None = None,
        subworkflow_runner: SubworkflowRunner | None = None,
        state_manager: LoopStateManager | None = None,
        router: OutputRouter | None = None,
    ) -> None:
        self.services = services
        self.deferred = dict(deferred or {})
        self.subworkflow_runner = subworkflow_runner
        self.router = router or OutputRouter(services)
        self.loop_engine = AgenticLoopEngine(self, state_manager)
        self._handlers: dict[StepKind, Callable[[Step, RunContext], StepResult]] = {
            StepKind.SPECIALIZED_API: self._run_specialized_api,
            StepKind.GENERATE: self._run_generate,
            StepKind.PROCESS: self._run_process,
            StepKind.INLINE_LOOP: self._run_inline_loop,
            StepKind.REPO_INDEX: self._run_repo_index,
            StepKind.STANDARD: self._run_standard,
        }

    def dispatch(self, step: Step, ctx: RunContext) -> StepResult:
        kind = step.config.kind
        logger.info(f"Running step: {step.name}", extra={"step": step.name, "kind": kind.value})
        try:
            result = self._handlers[kind](step, ctx)
        except WorkflowError:
            logger.error(f"Step {step.name} failed", extra={"step": step.name})
            raise
        except (OSError, ValueError) as e:
            raise StepExecutionError(step.name, str(e)) from e
        logger.debug(f"Step {step.name} produced {len(result.text)} characters")
        return result

    def run_with_deferrals(self, step: Step, ctx: RunContext) -> StepResult:
        """Dispatch ``step`` and follow any chain of deferred-step payloads.

        Each payload names a deferred step and its input. The chain is
        followed iteratively and bounded by ``MAX_DEFERRED_CHAIN``.
        """
        result = self.dispatch(step, ctx)
        ctx.last_output = result.text

        for _ in range(MAX_DEFERRED_CHAIN):
            call = parse_deferred_call(ctx.last_output, self.deferred)
            if call is None:
                return result
            name, value = call
            logger.info(f"Dispatching deferred step: {name}", extra={"step": name})
            ctx.last_output = value
            result = self.dispatch(Step(name=name, config=self.deferred[name]), ctx)
            ctx.last_output = result.text

        raise StepExecutionError(
            step.name, f"deferred step chain exceeded {MAX_DEFERRED_CHAIN} dispatches"
        )

    def _complete(
        self,
        model: str,
        prompt: str,
        attachment: Path | None = None,
        **kwargs: Any,
    ) -> str:
        provider = self.services.providers.provider_for(model)
        return provider.generate(prompt, model, file_path=attachment, **kwargs)

    def _build_action(self, step: Step, ctx: RunContext, extra: dict[str, str] | None = None) -> str:
        action = substitute("\n".join(step.config.action_list), ctx, extra)

        if any(_is_file_output(o) for o in step.config.output_list):
            action = OUTPUT_HANDLING_NOTE + action

        if step.config.memory:
            memory = self.services.memory.context()
            if memory:
                action = f"Context from project memory:\n---\n{memory}\n---\n\n{action}"
        return action

    def _outputs(self, step: Step, ctx: RunContext, extra: dict[str, str] | None = None) -> list[str]:
        return [substitute(o, ctx, extra) for o in step.config.output_list]

    def _run_standard(self, step: Step, ctx: RunContext) -> StepResult:
        config = step.config
        items = resolve_inputs(step, ctx, self.services)

        chunked = False
        if config.chunk is not None and len(items) == 1 and items[0].path is not None:
            with tempfile.TemporaryDirectory(prefix="workflow-chunks-") as work_dir:
                chunks = self.services.chunker.split(items[0].path, config.chunk, Path(work_dir))
                items = [InputItem(label=str(p), content=p.read_text(encoding="utf-8")) for p in chunks]
            chunked = True

        if chunked or (config.batch_mode == "individual" and len(items) > 1):
            return self._run_individual(step, items, ctx, chunked=chunked)

        content = combine_contents(items)
        attachment = items[0].path if len(items) == 1 and items[0].is_attachment else None
        result = self._respond(step, content, self._build_action(step, ctx), attachment)
        self.router.route(step, result, self._outputs(step, ctx), ctx)
        return StepResult(combined=result)

    def _respond(self, step: Step, content: str, action: str, attachment: Path | None = None) -> str:
        model = step.config.model_list[0] if step.config.model_list else NA
        if model == NA:
            return content
        kwargs: dict[str, Any] = {}
        if step.config.temperature is not None:
            kwargs["temperature"] = step.config.temperature
        return self._complete(model, build_prompt(content, action), attachment, **kwargs)

    def _run_individual(
        self,
        step: Step,
        items: list[InputItem],
        ctx: RunContext,
        *,
        chunked: bool,
    ) -> StepResult:
        total = len(items)
        results: list[IndividualOutput] = []
        failures: dict[str, str] = {}

        for index, item in enumerate(items):
            placeholders = {
                "file_index": str(index),
                "total_files": str(total),
                "chunk_index": str(index + 1) if chunked else str(index),
                "total_chunks": str(total),
            }
            try:
                content = item.read()
                action_values = dict(placeholders)
                if chunked:
                    action_values["current_chunk"] = content
                action = self._build_action(step, ctx, action_values)
                attachment = item.path if item.is_attachment else None
                output = self._respond(step, content, action, attachment)
                self.router.route(step, output, self._outputs(step, ctx, placeholders), ctx)
            except (WorkflowError, OSError, UnicodeDecodeError) as e:
                if not step.config.skip_errors:
                    raise
                logger.warning(
                    f"Skipping failed input {item.label}: {e}",
                    extra={"step": step.name, "input": item.label},
                )
                failures[item.label] = str(e)
                continue
            results.append(IndividualOutput(input_path=item.label, output=output))

        if not results and failures:
            raise BatchProcessingError(failures)
        return StepResult(individual=tuple(results))

    def _run_specialized_api(self, step: Step, ctx: RunContext) -> StepResult:
        config = step.config
        items = resolve_inputs(step, ctx, self.services)
        model = config.model_list[0]

        messages: list[dict[str, str]] = []
        if config.instructions:
            messages.append({"role": "system", "content": substitute(config.instructions, ctx)})
        messages.append(
            {"role": "user", "content": build_prompt(combine_contents(items), self._build_action(step, ctx))}
        )

        kwargs: dict[str, Any] = {}
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.max_output_tokens is not None:
            kwargs["max_tokens"] = config.max_output_tokens

        result = self.services.providers.provider_for(model).chat(messages, model, **kwargs)
        self.router.route(step, result, self._outputs(step, ctx), ctx)
        return StepResult(combined=result)

    def _run_generate(self, step: Step, ctx: RunContext) -> StepResult:
        generate = step.config.generate
        assert generate is not None

        models = [m for m in _listify(generate.model) if m]
        model = models[0] if models else self.services.config.llm.default_generation_model
        actions = _listify(generate.action)
        if not actions:
            raise StepExecutionError(step.name, "action for generate step is empty")

        context_parts: list[str] = []
        for item in resolve_inputs(step, ctx, self.services):
            try:
                context_parts.append(item.read())
            except OSError as e:
                logger.warning(f"Skipping unreadable generate input {item.label}: {e}")
        for name in generate.context_files:
            path = ctx.resolve_path(substitute(name, ctx))
            try:
                context_parts.append(f"File: {name}\n{path.read_text(encoding='utf-8')}")
            except OSError as e:
                logger.warning(f"Skipping unreadable context file {name}: {e}")

        prompt = _generation_prompt(
            request=substitute("\n".join(actions), ctx),
            context="\n\n".join(context_parts),
            models=self.services.config.llm.openai_models,
        )
        response = self._complete(model, prompt)
        workflow_yaml = extract_yaml(response)

        try:
            graph = parse_workflow_text(workflow_yaml, source=f"generated by {step.name}")
        except WorkflowParseError as e:
            raise StepExecutionError(step.name, f"generated workflow is invalid: {e}") from e
        validation = GraphValidator(known_model=self.services.providers.is_known).validate(graph)
        if not validation.valid:
            raise StepExecutionError(
                step.name, f"generated workflow failed validation:\n{validation.summary()}"
            )

        output_path = ctx.resolve_path(substitute(generate.output, ctx))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(workflow_yaml + "\n", encoding="utf-8")
        logger.info(f"Generated workflow saved to {output_path}", extra={"step": step.name})
        return StepResult(combined=f"Generated workflow saved to {output_path}")

    def _run_process(self, step: Step, ctx: RunContext) -> StepResult:
        process = step.config.process
        assert process is not None
        if self.subworkflow_runner is None:
            raise StepExecutionError(step.name, "sub-workflows are not supported in this context")

        path = ctx.resolve_path(substitute(process.workflow_file, ctx))
        inputs = {key: substitute(str(value), ctx) for key, value in process.inputs.items()}
        stdin = ctx.last_output if STDIN in step.config.input_list else None

        logger.info(f"Processing sub-workflow {path}", extra={"step": step.name})
        outcome = self.subworkflow_runner(path, inputs, stdin, ctx)

        for name in process.capture_outputs:
            value = outcome.variables.get(name.removeprefix("$"))
            if value is None:
                logger.warning(f"Sub-workflow {path} did not set ${name.removeprefix('$')}")
                continue
            ctx.variables.set(name, value)
        return StepResult(combined=outcome.last_output)

    def _run_inline_loop(self, step: Step, ctx: RunContext) -> StepResult:
        loop = step.config.agentic_loop
        assert loop is not None

        parent = step.config.model_copy(update={"agentic_loop": None})
        if loop.steps:
            sub_steps = [
                s if s.config.model is not None or parent.model is None
                else Step(name=s.name, config=s.config.model_copy(update={"model": parent.model}))
                for s in loop.steps
            ]
            initial_input = combine_contents(resolve_inputs(step, ctx, self.services))
        else:
            sub_steps = [Step(name=step.name, config=parent)]
            initial_input = ctx.last_output

        config = loop.model_copy(update={"steps": sub_steps})
        result = self.loop_engine.run(loop.name or step.name, config, initial_input, ctx)
        if loop.output_state:
            ctx.variables.set(loop.output_state, result.output)
        return StepResult(combined=result.output)

    def _run_repo_index(self, step: Step, ctx: RunContext) -> StepResult:
        index_config = step.config.codebase_index
        root_text = index_config.root if index_config else "."
        root = ctx.resolve_path(substitute(root_text, ctx))
        if not root.is_dir():
            raise StepExecutionError(step.name, f"repository root {root} is not a directory")

        index = self.services.indexer.index(root, index_config.max_files if index_config else 0)

        if index_config is not None and index_config.output_path:
            out_path = ctx.resolve_path(substitute(index_config.output_path, ctx))
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(index, encoding="utf-8")
        if index_config is None or index_config.expose.workflow_variable:
            ctx.variables.set(index_variable_name(root), index)

        self.router.route(step, index, self._outputs(step, ctx), ctx)
        return StepResult(combined=index)


def _is_file_output(output: str) -> bool:
    target = output.strip()
    return not (
        target in (STDOUT, MEMORY)
        or target.startswith(f"{MEMORY}:")
        or target.startswith("$")
        or is_tool_output(target)
    )


def _listify(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _generation_prompt(*, request: str, context: str, models: list[str]) -> str:
    if models:
        model_block = "Available models:\n" + "\n".join(models)
    else:
        model_block = "No models are configured. Use 'NA' for model fields."
    return (
        "SYSTEM: You are a YAML generator. Output ONLY a valid workflow YAML document. "
        "No explanations, no markdown, no commentary.\n\n"
        "A workflow maps step names to steps. A standard step has 'input' (file path, "
        "STDIN, NA, $VARIABLE or 'tool: <command>'), 'model', 'action' and 'output' "
        "(STDOUT, a file path or $VARIABLE). Reserved keys: 'parallel', 'defer', "
        "'agentic-loop', 'loops', 'execute_loops'.\n\n"
        f"{model_block}\n\n"
        f"User's request: {request}\n\n"
        f"Additional context (if any):\n{context}\n\n"
        "Use only the models listed above, or 'NA' if a step needs no model."
    )
