"""
observability/logger.py — RelayMind Structured Logging

structlog is routed through stdlib logging so SDK loggers (openai, httpx,
google_genai) end up in the same files and format as ours.

Every line carries timestamp, level, logger and event, plus exchange_id and
conversation_id while an exchange is running (see bind_exchange). Values that
look like provider API keys are masked before rendering, so a stray
`log.debug(..., headers=...)` can never leak a secret into the log file.

Usage:
    from relaymind.observability.logger import get_logger, setup_logging

    setup_logging(level="INFO", log_dir="./data/logs")   # once, at startup
    log = get_logger(__name__)
    log.info("router.call.success", family="gemini", model="gemini-2.5-flash")
    log.warning("pool.cooldown", credential="gemini#2(…9f3a)", seconds=40)
"""

from __future__ import annotations

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, WrappedLogger

_LOG_FILE = "relaymind.log"

# SDK request logs are noisy at INFO and may echo prompt text
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "google_genai")

# Gemini "AIza…", OpenAI/OpenRouter "sk-…", Groq "gsk_…"
_SECRET_RE = re.compile(r"(AIza[\w-]{20,}|sk-[\w-]{16,}|gsk_\w{16,})")


# ─────────────────────────────────────────────────────────────────────────────
# Processors
# ─────────────────────────────────────────────────────────────────────────────


def _mask(value: str) -> str:
    return _SECRET_RE.sub(lambda m: f"…{m.group(0)[-4:]}", value)


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Mask anything shaped like a provider API key in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str) and _SECRET_RE.search(value):
            event_dict[key] = _mask(value)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]


def _build_handlers(
    log_dir: Path,
    level: int,
    console_output: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            filename=log_dir / _LOG_FILE,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    ]
    if console_output:
        # stdout belongs to the CLI renderer
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at application startup.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating JSON log file.
        json_format:    Console renders JSON when True, coloured key=value otherwise.
                        The file is always JSON.
        console_output: Mirror log lines to stderr.
        max_bytes:      Rotation threshold for the log file.
        backup_count:   Rotated files to keep.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()
    handlers = _build_handlers(Path(log_dir), numeric_level, console_output, max_bytes, backup_count)

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    json_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        foreign_pre_chain=shared,
    )
    handlers[0].setFormatter(json_formatter)
    if console_output:
        console_renderer = (
            structlog.processors.JSONRenderer(ensure_ascii=False)
            if json_format
            else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )
        handlers[1].setFormatter(structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, console_renderer],
            foreign_pre_chain=shared,
        ))


def get_logger(name: str = "relaymind", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Logger for `name`, optionally pre-bound with context values."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_exchange(exchange_id: str, conversation_id: Optional[str] = None) -> None:
    """
    Attach exchange ids to every log line emitted from this async context.

    Tasks spawned afterwards inherit the binding, so router and credential
    pool lines can be traced back to the exchange that caused them.
    """
    values: dict[str, Any] = {"exchange_id": exchange_id}
    if conversation_id:
        values["conversation_id"] = conversation_id
    structlog.contextvars.bind_contextvars(**values)


def clear_exchange() -> None:
    structlog.contextvars.unbind_contextvars("exchange_id", "conversation_id")
