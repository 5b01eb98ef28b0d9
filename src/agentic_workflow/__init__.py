"""Agentic Workflow Engine.

Runs declaratively defined LLM pipelines locally:
- sequential steps chained through a shared variable store
- parallel step groups
- iterative agentic loops with checkpoint/resume
- dependency-ordered multi-loop workflows
"""

__version__ = "0.1.0"

from agentic_workflow.core.config import EngineConfig
from agentic_workflow.workflow.engine import WorkflowEngine

__all__ = ["__version__", "EngineConfig", "WorkflowEngine"]
