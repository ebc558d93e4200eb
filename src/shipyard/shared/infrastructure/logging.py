"""
Structured logging configuration using structlog.

Provides consistent, structured logging across all modules, with redaction
of credentials that tend to leak through deploy commands and webhook URLs.
"""

import logging
import re
import sys
from collections import Counter
from collections.abc import Iterable
from typing import Any

import structlog

from shipyard.shared.infrastructure.config import settings

_REDACTION_PATTERNS = {
    r"(api[_-]?key|token|password|passwd|secret)['\"]?\s*[:=]\s*['\"]?([^'\"\s]+)": r"\1=[REDACTED]",
    r"Bearer\s+\S+": "Bearer [TOKEN_REDACTED]",
    r"https://hooks\.slack\.com/services/\S+": "https://hooks.slack.com/services/[REDACTED]",
    r"(https?://)[^/\s:@]+:[^/\s@]+@": r"\1[CREDENTIALS_REDACTED]@",
    r"/home/[^/\s]+": "[HOME_REDACTED]",
}


# Literal values supplied as run secrets, counted per registering run
_secret_values: Counter[str] = Counter()


def register_secrets(values: Iterable[str]) -> None:
    """Mask these literal values until the matching forget_secrets call."""
    _secret_values.update(v for v in values if v and len(v) >= 4)


def forget_secrets(values: Iterable[str]) -> None:
    """Undo one register_secrets call for ``values``."""
    _secret_values.subtract(v for v in values if v and len(v) >= 4)
    for value in [v for v, count in _secret_values.items() if count <= 0]:
        del _secret_values[value]


def redact_string(text: str) -> str:
    """Redact registered secrets and sensitive patterns from a string."""
    for secret in sorted(_secret_values, key=len, reverse=True):
        text = text.replace(secret, "****")
    for pattern, replacement in _REDACTION_PATTERNS.items():
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    return text


def privacy_redactor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Redact sensitive information from log events.

    Redacts:
    - API keys, tokens, passwords and secrets in key=value form
    - Bearer tokens
    - Slack webhook paths and basic-auth credentials in URLs
    - Home directory paths
    """
    if not getattr(settings, "log_redaction_enabled", True):
        return event_dict

    def redact_value(value: Any) -> Any:
        if isinstance(value, str):
            return redact_string(value)
        if isinstance(value, dict):
            return {k: redact_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [redact_value(v) for v in value]
        return value

    return {k: redact_value(v) for k, v in event_dict.items()}


def configure_logging(stream: Any = sys.stderr) -> None:
    """
    Configure structlog for the application.

    Sets up:
    - Pretty console output for development
    - JSON output for production
    - Log level from settings
    - Run id binding through contextvars
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        privacy_redactor,
    ]

    if settings.is_development:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=stream.isatty() if hasattr(stream, "isatty") else False),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        force=True,
    )


def get_logger(name: str) -> Any:
    """
    Get a structured logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("stage_started", stage="build", run_id="abc")
    """
    return structlog.get_logger(name)
