"""Model provider package."""

from agentic_workflow.llm.provider import LLMProvider
from agentic_workflow.llm.registry import ProviderRegistry

__all__ = [
    "LLMProvider",
    "ProviderRegistry",
]
