"""Resolution of a step's declared inputs into concrete content."""

from __future__ import annotations

import glob
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from agentic_workflow.errors import StepExecutionError
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.models import NA, STDIN, Step
from agentic_workflow.workflow.tools import ToolPolicy, is_tool_input, parse_tool_input
from agentic_workflow.workflow.validator import is_inline_content
from agentic_workflow.workflow.variables import parse_variable_assignment, substitute_templates

logger = logging.getLogger(__name__)

_WHOLE_VARIABLE_RE = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)$")

ATTACHMENT_SUFFIXES = frozenset({".pdf", ".png", ".jpg", ".jpeg", ".gif", ".webp"})


@dataclass(frozen=True, slots=True)
class InputItem:
    """One resolved input. File contents are read lazily."""

    label: str
    content: str | None = None
    path: Path | None = None

    @property
    def is_attachment(self) -> bool:
        return self.path is not None and self.path.suffix.lower() in ATTACHMENT_SUFFIXES

    def read(self) -> str:
        if self.content is not None:
            return self.content
        if self.path is None or self.is_attachment:
            return ""
        return self.path.read_text(encoding="utf-8")


def substitute(text: str, ctx: RunContext, extra: dict[str, str] | None = None) -> str:
    """Apply CLI and loop placeholders, then ``$NAME`` variables, then ``extra`` placeholders."""
    text = substitute_templates(text, ctx.cli_variables)
    text = substitute_templates(text, ctx.loop_variables)
    text = ctx.variables.substitute(text)
    if extra:
        text = substitute_templates(text, extra)
    return text


def resolve_inputs(step: Step, ctx: RunContext, services: Services) -> list[InputItem]:
    """Turn ``step.config.input`` into input items.

    ``STDIN`` pipes the previous output (``STDIN as $NAME`` also stores it),
    ``tool: ...`` runs a command, ``$NAME`` reads a variable, inline text is
    used as-is and anything else is a file path or glob.
    """
    items: list[InputItem] = []
    for raw in step.config.input_list:
        source, assign_to = parse_variable_assignment(raw)
        stripped = source.strip()

        if stripped == NA:
            continue
        if stripped == STDIN:
            if assign_to:
                ctx.variables.set(assign_to, ctx.last_output)
            items.append(InputItem(label=STDIN, content=ctx.last_output))
            continue
        if is_tool_input(stripped):
            command, uses_stdin = parse_tool_input(substitute(stripped, ctx))
            policy = ToolPolicy.merge(services.config.tools, step.config.tool)
            output = services.tools.execute(command, ctx.last_output if uses_stdin else "", policy)
            items.append(InputItem(label=f"tool: {command}", content=output))
            continue
        if is_inline_content(source):
            items.append(InputItem(label="inline", content=substitute(source, ctx)))
            continue

        match = _WHOLE_VARIABLE_RE.match(stripped)
        if match:
            value = ctx.variables.get(match.group(1))
            if value is None:
                raise StepExecutionError(step.name, f"variable ${match.group(1)} is not defined")
            items.append(InputItem(label=stripped, content=value))
            continue

        items.extend(_file_items(step, substitute(stripped, ctx), ctx))
    return items


def _file_items(step: Step, pattern: str, ctx: RunContext) -> list[InputItem]:
    path = ctx.resolve_path(pattern)
    if glob.has_magic(pattern):
        matches = sorted(glob.glob(str(path), recursive=True))
        if not matches:
            raise StepExecutionError(step.name, f"no files match input pattern '{pattern}'")
        return [InputItem(label=m, path=Path(m)) for m in matches]
    return [InputItem(label=pattern, path=path)]


def combine_contents(items: list[InputItem]) -> str:
    if len(items) == 1:
        return items[0].read()
    return "\n\n".join(f"File: {item.label}\n{item.read()}" for item in items)
