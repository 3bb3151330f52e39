"""Local summarization of message content."""

from .engine import (
    ModelStatus,
    SummarizationEngine,
    SummaryOptions,
    SummaryRequest,
    SummaryState,
)
from .text import extract_text

__all__ = [
    "ModelStatus",
    "SummarizationEngine",
    "SummaryOptions",
    "SummaryRequest",
    "SummaryState",
    "extract_text",
]
