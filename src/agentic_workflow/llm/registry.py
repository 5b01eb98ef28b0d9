"""Routing of model names to providers."""

import logging

from agentic_workflow.core.config import LLMConfig
from agentic_workflow.errors import UnknownModelError
from agentic_workflow.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Ordered collection of providers; the first that supports a model wins."""

    def __init__(self, providers: list[LLMProvider] | None = None) -> None:
        self._providers: list[LLMProvider] = list(providers or [])

    @classmethod
    def from_config(cls, config: LLMConfig) -> "ProviderRegistry":
        """Create a registry holding every provider the configuration enables.

        Args:
            config: Model provider configuration.

        Returns:
            Registry instance, possibly empty.
        """
        registry = cls()
        if config.openai_api_key:
            from agentic_workflow.llm.openai_provider import OpenAIProvider

            registry.register(OpenAIProvider(config))
        else:
            logger.info("No OpenAI API key configured, OpenAI models unavailable")
        return registry

    def register(self, provider: LLMProvider) -> None:
        logger.debug(f"Registering provider: {provider.name}")
        self._providers.append(provider)

    def is_known(self, model: str) -> bool:
        return any(p.supports_model(model) for p in self._providers)

    def provider_for(self, model: str) -> LLMProvider:
        """Return the provider serving ``model``.

        Raises:
            UnknownModelError: If no registered provider supports the model.
        """
        for provider in self._providers:
            if provider.supports_model(model):
                return provider
        raise UnknownModelError(model)
