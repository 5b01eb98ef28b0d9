"""CLI entrypoint for the workflow engine."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from agentic_workflow import __version__
from agentic_workflow.core.config import EngineConfig
from agentic_workflow.errors import (
    ConfigurationError,
    DependencyError,
    LoopTimeoutError,
    NoSavedStateError,
    WorkflowError,
)
from agentic_workflow.workflow.context import Services
from agentic_workflow.workflow.engine import WorkflowEngine
from agentic_workflow.workflow.loop_state import (
    LoopState,
    LoopStateManager,
    LoopStatus,
    validate_workflow_checksum,
)

logger = logging.getLogger(__name__)


def _parse_vars(values: list[str] | None) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"invalid --var '{item}', expected key=value")
        parsed[key.strip()] = value
    return parsed


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentic-workflow",
        description="Run declarative LLM workflows with parallel steps and agentic loops",
    )
    parser.add_argument(
        "--version", action="version", version=f"agentic-workflow-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Validate and run a workflow file")
    run.add_argument("workflow", help="Path to the workflow YAML file")
    run.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Value for a {{ KEY }} placeholder (repeatable)",
    )
    run.add_argument(
        "--stdin",
        action="store_true",
        help="Read standard input and pass it to the first step as STDIN",
    )
    run.add_argument(
        "--runtime-dir",
        default=None,
        help="Directory relative file paths are resolved against",
    )

    validate = subparsers.add_parser("validate", help="Validate a workflow file without running it")
    validate.add_argument("workflow", help="Path to the workflow YAML file")

    loop = subparsers.add_parser("loop", help="Inspect and manage saved loop states")
    loop_sub = loop.add_subparsers(dest="loop_command", required=True)

    status = loop_sub.add_parser("status", help="List saved loops, or show one in detail")
    status.add_argument("name", nargs="?", default=None, help="Loop name")

    resume = loop_sub.add_parser("resume", help="Resume a paused or failed loop")
    resume.add_argument("name", help="Loop name")

    cancel = loop_sub.add_parser("cancel", help="Cancel a loop and delete its saved state")
    cancel.add_argument("name", help="Loop name")

    loop_sub.add_parser("clean", help="Delete completed and failed loop states")

    return parser


def _print_state_table(states: list[LoopState]) -> None:
    if not states:
        print("No saved loop states found")
        return
    print(f"{'LOOP NAME':<24} {'STATUS':<10} {'ITERATION':<10} LAST UPDATED")
    for state in states:
        iteration = f"{state.iteration}/{state.max_iterations}"
        print(
            f"{state.loop_name:<24} {state.status.value:<10} {iteration:<10} "
            f"{state.last_update_time.isoformat(timespec='seconds')}"
        )


def _print_state_detail(state: LoopState) -> None:
    print(f"Loop: {state.loop_name}")
    print(f"Status: {state.status.value}")
    print(f"Iteration: {state.iteration}/{state.max_iterations}")
    print(f"Started: {state.start_time.isoformat(timespec='seconds')}")
    print(f"Last updated: {state.last_update_time.isoformat(timespec='seconds')}")
    if state.workflow_file:
        print(f"Workflow file: {state.workflow_file}")
    if state.exit_condition:
        print(f"Exit condition: {state.exit_condition}")
        if state.exit_pattern:
            print(f"Exit pattern: {state.exit_pattern}")
    if state.variables:
        print("\nVariables:")
        for key, value in sorted(state.variables.items()):
            print(f"  {key} = {_truncate(value, 100)}")
    if state.history:
        print("\nRecent iterations (last 5):")
        for entry in state.history[-5:]:
            print(f"  Iteration {entry.index} ({entry.timestamp.strftime('%H:%M:%S')}):")
            print(f"    {_truncate(entry.output, 200)}")


def _run_workflow(path: Path, config: EngineConfig, cli_variables: dict[str, str], stdin: str) -> int:
    engine = WorkflowEngine.from_file(
        path,
        Services.from_config(config),
        cli_variables=cli_variables,
        last_output=stdin,
    )
    engine.run()
    return 0


def _loop_command(args: argparse.Namespace, config: EngineConfig) -> int:
    manager = LoopStateManager(config.state.loop_state_dir)

    if args.loop_command == "status":
        if args.name is None:
            _print_state_table(manager.list_states())
        else:
            _print_state_detail(manager.load_state(args.name))
        return 0

    if args.loop_command == "resume":
        state = manager.load_state(args.name)
        if state.status == LoopStatus.COMPLETED:
            print(f"Loop '{args.name}' is already completed", file=sys.stderr)
            return 1
        if not state.workflow_file:
            print(f"Loop '{args.name}' has no recorded workflow file", file=sys.stderr)
            return 1
        validate_workflow_checksum(state)
        logger.info(
            f"Resuming loop {args.name} from iteration {state.iteration}/{state.max_iterations}",
            extra={"loop": args.name},
        )
        return _run_workflow(Path(state.workflow_file), config, {}, "")

    if args.loop_command == "cancel":
        manager.delete_state(args.name)
        print(f"Loop '{args.name}' cancelled and state deleted")
        return 0

    if args.loop_command == "clean":
        deleted = 0
        for state in manager.list_states():
            if state.status in (LoopStatus.COMPLETED, LoopStatus.FAILED):
                manager.delete_state(state.loop_name)
                print(f"Deleted {state.status.value} loop: {state.loop_name}")
                deleted += 1
        if deleted == 0:
            print("No completed or failed loop states to clean")
        else:
            print(f"Cleaned {deleted} loop state(s)")
        return 0

    logger.error("Unknown loop command", extra={"command": args.loop_command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig()
    except ValidationError as e:
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    config.setup_logging()

    try:
        if args.command == "run":
            try:
                cli_variables = _parse_vars(args.var)
            except argparse.ArgumentTypeError as e:
                parser.error(str(e))
            if args.runtime_dir:
                config.runtime_dir = Path(args.runtime_dir)
            stdin = sys.stdin.read() if args.stdin else ""
            return _run_workflow(Path(args.workflow), config, cli_variables, stdin)

        if args.command == "validate":
            engine = WorkflowEngine.from_file(Path(args.workflow), Services.from_config(config))
            engine.validate()
            print(f"Workflow {args.workflow} is valid")
            return 0

        if args.command == "loop":
            return _loop_command(args, config)

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (ConfigurationError, DependencyError) as e:
        print(str(e), file=sys.stderr)
        return 3

    except LoopTimeoutError as e:
        logger.error(str(e), extra={"loop": e.loop_name})
        if e.best_output:
            print(e.best_output)
        return 4

    except NoSavedStateError as e:
        print(str(e), file=sys.stderr)
        return 5

    except WorkflowError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
