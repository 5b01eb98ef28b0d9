"""Routing of step results to their declared destinations."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.models import MEMORY, STDOUT, Step
from agentic_workflow.workflow.tools import STDIN_PIPE, ToolPolicy, is_tool_output, parse_tool_output

logger = logging.getLogger(__name__)


class OutputRouter:
    """Writes a result to ``STDOUT``, a file, a ``$VARIABLE``, ``MEMORY`` or a tool."""

    def __init__(self, services: Services, stream: TextIO | None = None) -> None:
        self.services = services
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def route(self, step: Step, result: str, outputs: list[str], ctx: RunContext) -> None:
        for output in outputs:
            target = output.strip()
            if target == STDOUT:
                self._print(result)
            elif target == MEMORY or target.startswith(f"{MEMORY}:"):
                section = target.partition(":")[2].strip()
                self.services.memory.append(f"### {section}\n\n{result}" if section else result)
            elif is_tool_output(target):
                command = parse_tool_output(target)
                policy = ToolPolicy.merge(self.services.config.tools, step.config.tool)
                self._print(self.services.tools.execute(f"{STDIN_PIPE}{command}", result, policy))
            elif target.startswith("$"):
                ctx.variables.set(target, result)
                logger.debug(f"Stored output of {step.name} in {target}", extra={"step": step.name})
            else:
                path = ctx.resolve_path(target)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(result, encoding="utf-8")
                logger.info(f"Wrote output of {step.name} to {path}", extra={"step": step.name})

    def _print(self, text: str) -> None:
        self.stream.write(text if text.endswith("\n") else text + "\n")
        self.stream.flush()
