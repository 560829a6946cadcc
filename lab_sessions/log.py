from __future__ import annotations

import logging
from typing import Any

from .config import Settings

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


class ContextAdapter(logging.LoggerAdapter):
    """Appends the bound context (user id, lab request id) to every message."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        if not self.extra:
            return msg, kwargs
        context = " ".join(f"{key}={value}" for key, value in self.extra.items())
        return f"{msg} | {context}", kwargs


def bind(logger: logging.Logger | logging.LoggerAdapter, **context: Any) -> ContextAdapter:
    if isinstance(logger, logging.LoggerAdapter):
        merged = {**(logger.extra or {}), **context}
        return ContextAdapter(logger.logger, merged)
    return ContextAdapter(logger, context)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.resolved_log_level, format=LOG_FORMAT)
    logging.getLogger("lab_sessions").setLevel(settings.resolved_log_level)
