"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agentic_workflow.core.config import EngineConfig, LLMConfig, StateConfig, ToolConfig
from agentic_workflow.llm.provider import LLMProvider
from agentic_workflow.llm.registry import ProviderRegistry
from agentic_workflow.workflow.collaborators import FileMemoryStore, FileTreeIndexer, LineChunker
from agentic_workflow.workflow.context import RunContext, Services
from agentic_workflow.workflow.tools import SubprocessToolExecutor


class FakeProvider(LLMProvider):
    """Scripted provider: a responder callable, a queue of replies, or an echo."""

    name = "fake"

    def __init__(
        self,
        responses: list[str] | None = None,
        respond: Callable[[str], str] | None = None,
        models: tuple[str, ...] = ("fake-model", "fake-large"),
    ) -> None:
        self.models = set(models)
        self.responses = list(responses or [])
        self.respond = respond
        self.prompts: list[str] = []
        self.files: list[Path | None] = []
        self.messages: list[list[dict[str, str]]] = []
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def supports_model(self, model: str) -> bool:
        return model in self.models

    def _reply(self, prompt: str) -> str:
        if self.respond is not None:
            return self.respond(prompt)
        if self.responses:
            return self.responses.pop(0)
        return f"echo: {prompt}"

    def generate(
        self,
        prompt: str,
        model: str,
        file_path: Path | None = None,
        **kwargs: Any,
    ) -> str:
        with self._lock:
            self.prompts.append(prompt)
            self.files.append(file_path)
            self.calls.append({"model": model, **kwargs})
            return self._reply(prompt)

    def chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        **kwargs: Any,
    ) -> str:
        with self._lock:
            self.messages.append(list(messages))
            self.calls.append({"model": model, **kwargs})
            return self._reply(messages[-1]["content"])


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary loop state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def engine_config(tmp_path: Path, temp_state_dir: Path) -> EngineConfig:
    """Provide a test engine configuration rooted at ``tmp_path``."""
    return EngineConfig(
        log_level="DEBUG",
        debug=True,
        runtime_dir=tmp_path,
        llm=LLMConfig(openai_api_key=None, openai_models=[]),
        tools=ToolConfig(),
        state=StateConfig(loop_state_dir=temp_state_dir, memory_file=tmp_path / "memory.md"),
    )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def services(engine_config: EngineConfig, fake_provider: FakeProvider, tmp_path: Path) -> Services:
    """Services wired to the fake provider and real local collaborators."""
    return Services(
        config=engine_config,
        providers=ProviderRegistry([fake_provider]),
        tools=SubprocessToolExecutor(working_dir=tmp_path),
        memory=FileMemoryStore(path=engine_config.state.memory_file),
        chunker=LineChunker(),
        indexer=FileTreeIndexer(),
    )


@pytest.fixture
def run_context(tmp_path: Path) -> RunContext:
    return RunContext(runtime_dir=tmp_path)
