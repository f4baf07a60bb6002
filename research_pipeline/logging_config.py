"""Structured logging for the research pipeline.

:func:`configure_logging` wires *structlog* and the stdlib ``logging`` module
into one processor chain so that our own events and third-party records
(httpx, aiohttp, openai, uvicorn) render the same way. Run and user
identifiers bound with :func:`bind_run_context` are merged into every line
logged while a run is active.

Modules obtain loggers with ``structlog.get_logger(__name__)`` and never
configure the library themselves.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import structlog

__all__ = [
    "configure_logging",
    "bind_run_context",
    "clear_run_context",
]

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "aiohttp.access")

_configured = False


def _common_processors() -> List[structlog.types.Processor]:
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]


def configure_logging(level: str = "INFO", pretty: bool = False, force: bool = False) -> None:
    """Configure structlog with a stdlib bridge.

    Args:
        level: Root log level name; unknown names fall back to INFO.
        pretty: Console renderer instead of JSON lines.
        force: Reconfigure even when already configured (tests, scripts).
    """
    global _configured
    if _configured and not force:
        return

    renderer = structlog.dev.ConsoleRenderer() if pretty else structlog.processors.JSONRenderer()

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.contextvars.merge_contextvars],
            processors=_common_processors() + [renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            *_common_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def bind_run_context(run_id: Optional[str] = None, user_id: Optional[str] = None) -> None:
    """Bind run identifiers for every subsequent log line in this context.

    Only the identifiers passed are updated.
    """
    payload: Dict[str, str] = {}
    if run_id:
        payload["run_id"] = run_id
    if user_id:
        payload["user_id"] = user_id
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "user_id")
