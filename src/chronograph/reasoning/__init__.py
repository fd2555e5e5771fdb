"""Typed reasoning tasks over the LLM collaborator."""

from src.chronograph.reasoning.schemas import TaskKind, Parsed, Unparseable, parse_task_output
from src.chronograph.reasoning.processor import ReasoningProcessor, ReasoningConfig, ExtractionResult

__all__ = [
    "TaskKind",
    "Parsed",
    "Unparseable",
    "parse_task_output",
    "ReasoningProcessor",
    "ReasoningConfig",
    "ExtractionResult",
]
