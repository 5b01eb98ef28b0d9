"""Core configuration for the workflow engine."""

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentic_workflow.core.logging import configure_logging


class LLMConfig(BaseSettings):
    """Configuration for model providers."""

    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_base_url: str | None = Field(
        default=None,
        description="Optional OpenAI-compatible base URL",
    )
    openai_models: list[str] = Field(
        default_factory=lambda: ["gpt-4o", "gpt-4o-mini", "gpt-4.1", "o3", "o4-mini"],
        description="Model names routed to the OpenAI provider",
    )
    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for standard steps",
    )
    default_generation_model: str = Field(
        default="gpt-4o",
        description="Model used by generate steps that do not name one",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_LLM_",
        env_file=".env",
        extra="ignore",
    )


class ToolConfig(BaseSettings):
    """Global shell-tool permissions.

    Step-level ``tool:`` blocks are merged over these values.
    """

    allowlist: list[str] = Field(
        default_factory=list,
        description="Commands allowed in tool inputs/outputs (empty = built-in read-only set)",
    )
    denylist: list[str] = Field(
        default_factory=list,
        description="Commands denied in addition to the built-in denylist",
    )
    timeout: int = Field(
        default=30,
        gt=0,
        description="Tool execution timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_TOOL_",
        env_file=".env",
        extra="ignore",
    )


class StateConfig(BaseSettings):
    """Configuration for loop checkpoints and memory."""

    loop_state_dir: Path = Field(
        default=Path.home() / ".agentic-workflow" / "loop-states",
        description="Directory where loop checkpoints are persisted",
    )
    memory_file: Path | None = Field(
        default=None,
        description="Memory file injected into steps with memory: true",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_STATE_",
        env_file=".env",
        extra="ignore",
    )


class EngineConfig(BaseSettings):
    """Main configuration for the workflow engine."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    runtime_dir: Path | None = Field(
        default=None,
        description="Directory relative file paths are resolved against",
    )

    llm: LLMConfig = Field(
        default_factory=LLMConfig,
        description="Model provider configuration",
    )
    tools: ToolConfig = Field(
        default_factory=ToolConfig,
        description="Shell tool configuration",
    )
    state: StateConfig = Field(
        default_factory=StateConfig,
        description="State configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("agentic_workflow").setLevel(logging.DEBUG)
