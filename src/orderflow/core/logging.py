"""Structured logging setup.

Uses structlog for structured JSON logging in production and human-readable
console output in development. Job handlers bind ``store_id`` and friends
through ``structlog.contextvars`` so every event inside a job carries them.
"""

from __future__ import annotations

import logging

import structlog

from src.orderflow.config import Environment, get_settings


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logs: ``+2******0000``."""
    s = (phone or "").strip()
    if len(s) < 6:
        return "***" if s else s
    return f"{s[:2]}******{s[-4:]}"
