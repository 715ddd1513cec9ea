"""key=value logging for the Levi context service.

Every line carries the tenant it was logged for (when known), so a single
org's retrieval and cache activity can be grepped out of mixed traffic.
"""

import logging
import sys
from typing import Any

# LEVI_ENV -> default level; LOG_LEVEL overrides it
ENV_LEVELS = {
    "dev": logging.DEBUG,
    "test": logging.WARNING,
}
DEFAULT_LEVEL = logging.INFO


class StructuredFormatter(logging.Formatter):
    """Renders a record as space-separated key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
        }

        tenant_id = getattr(record, "tenant_id", None)
        if tenant_id:
            fields["tenant_id"] = tenant_id

        fields["msg"] = record.getMessage()
        fields.update(getattr(record, "extra_data", None) or {})

        if record.exc_info:
            fields["exc"] = self.formatException(record.exc_info).replace("\n", " | ")

        return " ".join(f"{key}={_render(value)}" for key, value in fields.items())


def _render(value: Any) -> str:
    text = str(value)
    # Quote values with spaces so the line stays splittable on whitespace
    if " " in text and not text.startswith('"'):
        return f'"{text}"'
    return text


def resolve_level(env: str, override: str | None = None) -> int:
    """Pick the log level from an explicit LOG_LEVEL name or the environment."""
    if override:
        level = logging.getLevelName(override.upper())
        if isinstance(level, int):
            return level
    return ENV_LEVELS.get(env, DEFAULT_LEVEL)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger writing structured lines to stdout.

    The handler is attached once per logger name; the level comes from
    Settings (DEBUG in dev, INFO when settings can't be loaded yet).

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    try:
        from levi_agent.core.config import get_settings

        settings = get_settings()
        logger.setLevel(resolve_level(settings.LEVI_ENV, settings.LOG_LEVEL))
    except Exception:
        # Required settings may be missing at import time
        logger.setLevel(DEFAULT_LEVEL)

    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    tenant_id: str | None = None,
    **fields: Any,
) -> None:
    """
    Log with a tenant and structured fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        tenant_id: Org the event belongs to
        **fields: Extra key=value pairs appended to the line
    """
    logger.log(level, msg, extra={"tenant_id": tenant_id, "extra_data": fields})
