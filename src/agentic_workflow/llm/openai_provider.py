"""OpenAI model provider implementation."""

import base64
import logging
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from agentic_workflow.core.config import LLMConfig
from agentic_workflow.errors import ProviderError
from agentic_workflow.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation."""

    name = "openai"

    def __init__(self, config: LLMConfig) -> None:
        """Initialize the OpenAI provider.

        Args:
            config: Model provider configuration.

        Raises:
            ValueError: If API key is not provided.
        """
        if not config.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.config = config
        self.client = OpenAI(api_key=config.openai_api_key, base_url=config.openai_base_url)
        self.models = set(config.openai_models)
        self.temperature = config.temperature

        logger.info(f"OpenAI provider initialized with {len(self.models)} models")

    def supports_model(self, model: str) -> bool:
        return model in self.models

    def generate(
        self,
        prompt: str,
        model: str,
        file_path: Path | None = None,
        **kwargs: Any,
    ) -> str:
        """Generate text completion using the chat completions API.

        Images are sent as base64 data URLs. Other attached files are inlined
        ahead of the prompt as text.
        """
        if file_path is not None and file_path.suffix.lower() in IMAGE_MIME_TYPES:
            return self._complete([self._image_message(prompt, file_path)], model, **kwargs)
        if file_path is not None and file_path.suffix.lower() == ".pdf":
            raise ProviderError(f"PDF attachments are not supported by the OpenAI provider: {file_path}")
        if file_path is not None:
            try:
                attached = file_path.read_text(encoding="utf-8")
            except OSError as e:
                raise ProviderError(f"failed to read attached file {file_path}: {e}") from e
            prompt = f"File: {file_path.name}\n{attached}\n\n{prompt}"

        logger.debug(f"Generating completion with {model} for prompt: {prompt[:100]}...")
        return self.chat([{"role": "user", "content": prompt}], model, **kwargs)

    def chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        **kwargs: Any,
    ) -> str:
        return self._complete(list(messages), model, **kwargs)

    def _image_message(self, prompt: str, file_path: Path) -> dict[str, Any]:
        try:
            data = base64.b64encode(file_path.read_bytes()).decode("ascii")
        except OSError as e:
            raise ProviderError(f"failed to read attached image {file_path}: {e}") from e
        mime = IMAGE_MIME_TYPES[file_path.suffix.lower()]
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}},
            ],
        }

    def _complete(self, messages: list[dict[str, Any]], model: str, **kwargs: Any) -> str:
        kwargs.setdefault("temperature", self.temperature)
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,  # type: ignore
                **kwargs,
            )
        except OpenAIError as e:
            raise ProviderError(f"OpenAI request for model {model} failed: {e}") from e

        content = response.choices[0].message.content or ""
        logger.debug(f"Generated {len(content)} characters")

        return content
