"""Abstract base class for model providers."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class LLMProvider(ABC):
    """Abstract base class for model providers.

    The engine only needs text in and text out; how a provider talks to its
    backend is its own business. Failures are raised as ``ProviderError``.
    """

    name: str = "provider"

    @abstractmethod
    def supports_model(self, model: str) -> bool:
        """Return True if this provider can serve ``model``."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        model: str,
        file_path: Path | None = None,
        **kwargs: Any,
    ) -> str:
        """Generate text completion from a prompt.

        Args:
            prompt: The input prompt.
            model: Model name to use.
            file_path: Optional file attached to the prompt.
            **kwargs: Additional provider-specific parameters.

        Returns:
            Generated text completion.
        """

    @abstractmethod
    def chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        **kwargs: Any,
    ) -> str:
        """Generate chat completion from messages.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model name to use.
            **kwargs: Additional provider-specific parameters.

        Returns:
            Generated chat response.
        """
