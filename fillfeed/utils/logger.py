"""Structured logging configuration using structlog.

JSON output in production, colored console in development.
Secret masking processor keeps RPC API keys out of the logs.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

# Keys that indicate a secret value
_SECRET_PATTERNS = re.compile(
    r"(password|token|secret|api_key|api[-_]?key|authorization)",
    re.IGNORECASE,
)
# RPC providers embed keys in the URL: ?api-key=<key>, /v2/<key>, /<token>/
_URL_KEY_PATTERN = re.compile(r"((?:api[-_]?key|token)=)[^&\s]+", re.IGNORECASE)
_URL_VERSIONED_KEY_PATTERN = re.compile(r"(/v\d+/)[^/?#\s]+")
_URL_TOKEN_SEGMENT_PATTERN = re.compile(r"(/)[A-Za-z0-9_-]{24,}(?=[/?#]|$)")
_MASK = "***REDACTED***"


def mask_url(url: str) -> str:
    """Redact API keys carried in the query string or path of a URL."""
    url = _URL_KEY_PATTERN.sub(r"\1" + _MASK, url)
    url = _URL_VERSIONED_KEY_PATTERN.sub(r"\1" + _MASK, url)
    return _URL_TOKEN_SEGMENT_PATTERN.sub(r"\1" + _MASK, url)


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask any key/value pairs that look like secrets."""
    for key in list(event_dict.keys()):
        if _SECRET_PATTERNS.search(key):
            event_dict[key] = _MASK
        elif isinstance(event_dict[key], str) and "://" in event_dict[key]:
            event_dict[key] = mask_url(event_dict[key])
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Configure structlog and stdlib logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Force JSON output. If None, auto-detect from MODE env var.
    """
    if json_output is None:
        json_output = os.getenv("MODE", "prod") != "dev"

    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _mask_secrets,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Silence noisy third-party loggers
    for noisy in ("aiohttp", "asyncio", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger with module context.

    Args:
        module: Module name for context binding.

    Returns:
        A structlog bound logger instance.
    """
    return structlog.get_logger(module=module)
