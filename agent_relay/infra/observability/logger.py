"""Observability layer: relay-wide logging setup and log-safe text previews."""

from __future__ import annotations

import logging

_ASGI_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "websockets")


def setup_logging(level: str = "INFO") -> None:
    """Route relay, uvicorn and websockets records through one single-line root handler."""
    normalized = level.strip().upper()
    if not isinstance(logging.getLevelName(normalized), int):
        normalized = "INFO"
    logging.basicConfig(
        level=normalized,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        force=True,
    )
    for name in _ASGI_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.setLevel(normalized)
        logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def preview(text: str | None, *, limit: int = 120) -> str:
    """Collapse whitespace and cut long prompt text for log lines."""
    if not isinstance(text, str):
        return ""
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: max(1, limit - 3)].rstrip()}..."
