"""Core configuration and logging."""

from agentic_workflow.core.config import EngineConfig, LLMConfig, StateConfig, ToolConfig

__all__ = ["EngineConfig", "LLMConfig", "StateConfig", "ToolConfig"]
