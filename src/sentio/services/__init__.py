"""Application services: prompt catalog, memory updates and the workflow."""

from .memory_updates import NoUpdateExtractor, StructuredUpdateExtractor, apply_delta, interpret_reply
from .prompts import PromptCatalog
from .workflow import WorkflowOrchestrator, classify_failure

__all__ = [
    "NoUpdateExtractor",
    "PromptCatalog",
    "StructuredUpdateExtractor",
    "WorkflowOrchestrator",
    "apply_delta",
    "classify_failure",
    "interpret_reply",
]
