"""Structured logging setup shared by the API server and background tasks."""

from __future__ import annotations

import logging
import re
import sys

import structlog

SERVICE_NAME = "channelsync"

_SECRET_KEYS = frozenset({"access_token", "app_secret", "api_token", "partner_token", "client_secret"})
# Graph URLs carry tokens as query parameters.
_SECRET_QUERY = re.compile(r"((?:access_token|input_token|client_secret)=)[^&\s]+")
_NOISY_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "aiosqlite")


def _redact_secrets(
    _logger: logging.Logger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in event_dict.items():
        if key in _SECRET_KEYS:
            event_dict[key] = "***"
        elif isinstance(value, str) and "=" in value:
            event_dict[key] = _SECRET_QUERY.sub(r"\1***", value)
    return event_dict


def _add_service(
    _logger: logging.Logger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route structlog and stdlib records through one stdout handler.

    ``fmt`` is ``json`` (default) or ``console``. Token-like fields are
    masked before rendering.
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_secrets,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer(fmt)],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
