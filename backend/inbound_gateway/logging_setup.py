"""structlog configuration shared by the gateway and the relay."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import json_logs_enabled, resolve_log_level


def configure_logging(*, json_logs: bool | None = None, level: str | None = None) -> None:
    """Route structlog events through stdlib logging with a common format.

    Args:
        json_logs: Render JSON lines instead of console output. Defaults to
            the ``INBOUND_GATEWAY_LOG_JSON`` flag.
        level: Minimum level name. Defaults to ``INBOUND_GATEWAY_LOG_LEVEL``.
    """

    if json_logs is None:
        json_logs = json_logs_enabled()
    lvl = getattr(logging, (level or resolve_log_level()).upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(stream=sys.stdout, level=lvl, format="%(message)s")
