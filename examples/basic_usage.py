#!/usr/bin/env python3
"""Programmatic workflow execution example.

This demonstrates using the engine components directly:

* load settings from `.env`
* validate and run a workflow file
* inspect variables and loop outputs after the run

The workflow path is passed as an argument.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from agentic_workflow.core.config import EngineConfig
from agentic_workflow.errors import ConfigurationError
from agentic_workflow.workflow.context import Services
from agentic_workflow.workflow.engine import WorkflowEngine


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow file (programmatic example).")
    parser.add_argument("workflow", type=Path, help="Path to the workflow YAML file")
    parser.add_argument("--topic", default="autumn", help="Value for the {{ topic }} placeholder")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    config = EngineConfig()
    config.setup_logging()

    engine = WorkflowEngine.from_file(
        args.workflow,
        Services.from_config(config),
        cli_variables={"topic": args.topic},
    )

    try:
        result = engine.run()
    except ConfigurationError as exc:
        print(exc.result.summary())
        return 1

    print(f"Final output: {result.last_output}")
    for name, value in sorted(result.variables.items()):
        print(f"${name} = {value[:60]}")
    for loop_id, output in result.loop_outputs.items():
        print(f"Loop {loop_id}: {output.status} after {output.iterations} iterations")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
