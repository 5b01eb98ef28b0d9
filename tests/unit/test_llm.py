"""Unit tests for model providers and routing."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from openai import OpenAIError

from agentic_workflow.core.config import LLMConfig
from agentic_workflow.errors import ProviderError, UnknownModelError
from agentic_workflow.llm.openai_provider import OpenAIProvider
from agentic_workflow.llm.registry import ProviderRegistry
from tests.conftest import FakeProvider


def _completion(text: str) -> MagicMock:
    response = MagicMock()
    response.choices[0].message.content = text
    return response


@pytest.fixture
def mock_client() -> Iterator[MagicMock]:
    with patch("agentic_workflow.llm.openai_provider.OpenAI") as mock_openai:
        client = mock_openai.return_value
        client.chat.completions.create.return_value = _completion("hello")
        yield client


def _provider() -> OpenAIProvider:
    return OpenAIProvider(LLMConfig(openai_api_key="test-key", openai_models=["gpt-4o"]))


def test_provider_requires_api_key() -> None:
    with pytest.raises(ValueError, match="API key is required"):
        OpenAIProvider(LLMConfig(openai_api_key=None))


def test_generate_sends_user_message(mock_client: MagicMock) -> None:
    provider = _provider()

    assert provider.generate("Say hi", "gpt-4o") == "hello"

    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["messages"] == [{"role": "user", "content": "Say hi"}]
    assert kwargs["temperature"] == 0.7


def test_step_temperature_overrides_default(mock_client: MagicMock) -> None:
    _provider().chat([{"role": "user", "content": "x"}], "gpt-4o", temperature=0.1, max_tokens=50)

    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["temperature"] == 0.1
    assert kwargs["max_tokens"] == 50


def test_text_attachment_is_inlined(mock_client: MagicMock, tmp_path: Path) -> None:
    notes = tmp_path / "notes.txt"
    notes.write_text("remember the milk", encoding="utf-8")

    _provider().generate("Summarize", "gpt-4o", file_path=notes)

    content = mock_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert content == "File: notes.txt\nremember the milk\n\nSummarize"


def test_image_attachment_is_sent_as_data_url(mock_client: MagicMock, tmp_path: Path) -> None:
    image = tmp_path / "chart.png"
    image.write_bytes(b"\x89PNG")

    _provider().generate("Describe", "gpt-4o", file_path=image)

    content = mock_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "Describe"}
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_pdf_attachment_is_rejected(mock_client: MagicMock, tmp_path: Path) -> None:
    with pytest.raises(ProviderError, match="PDF"):
        _provider().generate("Read", "gpt-4o", file_path=tmp_path / "doc.pdf")
    mock_client.chat.completions.create.assert_not_called()


def test_api_errors_become_provider_errors(mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.side_effect = OpenAIError("rate limited")

    with pytest.raises(ProviderError, match="rate limited"):
        _provider().generate("x", "gpt-4o")


def test_registry_routes_by_model() -> None:
    first = FakeProvider(models=("a",))
    second = FakeProvider(models=("a", "b"))
    registry = ProviderRegistry([first, second])

    assert registry.provider_for("a") is first
    assert registry.provider_for("b") is second
    assert not registry.is_known("c")
    with pytest.raises(UnknownModelError):
        registry.provider_for("c")


def test_registry_from_config_without_key_is_empty() -> None:
    registry = ProviderRegistry.from_config(LLMConfig(openai_api_key=None))

    assert not registry.is_known("gpt-4o")


def test_registry_from_config_with_key(mock_client: MagicMock) -> None:
    registry = ProviderRegistry.from_config(LLMConfig(openai_api_key="k", openai_models=["gpt-4o"]))

    assert registry.is_known("gpt-4o")
