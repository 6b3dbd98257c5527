"""
Logging setup.

Every vaultflow module logs through the stdlib ``logging`` module; records
are rendered by structlog's ``ProcessorFormatter`` so the active attempt id
bound with ``bind_attempt`` rides along on each line. JSON in production,
colored console output at DEBUG.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import settings

QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx")


def _renderer(is_dev: bool) -> structlog.types.Processor:
    if is_dev:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(log_level: Optional[str] = None) -> None:
    """Install the structlog formatter on the root handler.

    Args:
        log_level: Override log level (default: from settings.log_level)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    is_dev = level == logging.DEBUG

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if not is_dev:
        pre_chain.append(structlog.processors.format_exc_info)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(is_dev),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_attempt(attempt_id: str, vault_address: Optional[str] = None) -> None:
    """Attach the active transaction attempt to every log line emitted in this context."""
    structlog.contextvars.clear_contextvars()
    values = {"attempt_id": attempt_id}
    if vault_address:
        values["vault"] = vault_address
    structlog.contextvars.bind_contextvars(**values)
