"""Structured logging for the evaluation engine."""

from flageval.core.logging.structured import (
    StructuredFormatter,
    bind_evaluation_context,
    clear_evaluation_context,
    configure_logging,
    evaluation_log_context,
    setup_structured_logging,
)

__all__ = [
    "StructuredFormatter",
    "bind_evaluation_context",
    "clear_evaluation_context",
    "configure_logging",
    "evaluation_log_context",
    "setup_structured_logging",
]
