"""Explicit run state threaded through the dispatcher and loop engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path

from agentic_workflow.core.config import EngineConfig
from agentic_workflow.llm.registry import ProviderRegistry
from agentic_workflow.workflow.collaborators import (
    FileChunker,
    FileMemoryStore,
    FileTreeIndexer,
    LineChunker,
    MemoryStore,
    RepoIndexer,
)
from agentic_workflow.workflow.tools import SubprocessToolExecutor, ToolExecutor
from agentic_workflow.workflow.variables import VariableStore


@dataclass(frozen=True)
class Services:
    """Collaborators the engine consumes but does not implement."""

    config: EngineConfig
    providers: ProviderRegistry
    tools: ToolExecutor
    memory: MemoryStore
    chunker: FileChunker
    indexer: RepoIndexer

    @classmethod
    def from_config(cls, config: EngineConfig) -> Services:
        return cls(
            config=config,
            providers=ProviderRegistry.from_config(config.llm),
            tools=SubprocessToolExecutor(working_dir=config.runtime_dir),
            memory=FileMemoryStore(path=config.state.memory_file),
            chunker=LineChunker(),
            indexer=FileTreeIndexer(),
        )


@dataclass
class RunContext:
    """Mutable state of one run.

    ``variables`` is shared by every fork of a context. ``last_output`` and
    ``loop_variables`` (the ``{{ loop.* }}`` values of the innermost running
    loop) are private to each fork so parallel workers never observe each other.
    """

    variables: VariableStore = field(default_factory=VariableStore)
    cli_variables: dict[str, str] = field(default_factory=dict)
    loop_variables: dict[str, str] = field(default_factory=dict)
    last_output: str = ""
    workflow_file: Path | None = None
    runtime_dir: Path | None = None
    depth: int = 0

    def fork(self) -> RunContext:
        return replace(
            self, cli_variables=dict(self.cli_variables), loop_variables=dict(self.loop_variables)
        )

    def resolve_path(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if candidate.is_absolute() or self.runtime_dir is None:
            return candidate
        return self.runtime_dir / candidate
