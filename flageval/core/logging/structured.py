"""Structured logging configuration.

Features:
- JSON formatted log lines for aggregation
- Correlation of log lines with the flag and targeting key being evaluated
- ``extra_fields`` passthrough for per-call attributes
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

if TYPE_CHECKING:
    from flageval.core.config import EngineSettings

# Context variables for evaluation tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
flag_key_var: ContextVar[Optional[str]] = ContextVar("flag_key", default=None)
targeting_key_var: ContextVar[Optional[str]] = ContextVar("targeting_key", default=None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "flageval",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        log_entry["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if request_id := request_id_var.get():
            log_entry["request_id"] = request_id
        if flag_key := flag_key_var.get():
            log_entry["flag_key"] = flag_key
        if targeting_key := targeting_key_var.get():
            log_entry["targeting_key"] = targeting_key

        if hasattr(record, "extra_fields"):
            log_entry["extra"] = record.extra_fields

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "flageval",
    environment: str = "production",
    level: int = logging.INFO,
    json_output: bool = True,
) -> None:
    """Configure the ``flageval`` logger hierarchy."""
    engine_logger = logging.getLogger("flageval")
    engine_logger.setLevel(level)

    for handler in engine_logger.handlers[:]:
        engine_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=service_name,
            environment=environment,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    engine_logger.addHandler(console_handler)


def configure_logging(settings: "EngineSettings") -> None:
    """Apply logging settings; a disabled engine logger only lets errors through."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if not settings.enable_logging:
        level = logging.ERROR
    setup_structured_logging(
        environment=settings.environment,
        level=level,
        json_output=settings.json_logs,
    )


def bind_evaluation_context(
    flag_key: Optional[str] = None,
    targeting_key: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    flag_key_var.set(flag_key)
    targeting_key_var.set(targeting_key)
    request_id_var.set(request_id)


def clear_evaluation_context() -> None:
    request_id_var.set(None)
    flag_key_var.set(None)
    targeting_key_var.set(None)


@contextmanager
def evaluation_log_context(flag_key: Optional[str], targeting_key: Optional[str]) -> Iterator[None]:
    """Scope log correlation to a single evaluation.

    Both values are set even when empty, and the previous values are
    restored on exit.

    Example:
        with evaluation_log_context("newDashboardUi", ctx.targeting_key):
            result = await provider.resolve_boolean(...)
    """
    flag_token = flag_key_var.set(flag_key)
    targeting_token = targeting_key_var.set(targeting_key)
    try:
        yield
    finally:
        targeting_key_var.reset(targeting_token)
        flag_key_var.reset(flag_token)
