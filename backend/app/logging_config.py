"""Logging configuration for the ZeroMiles backend.

All backend loggers live under the ``zeromiles`` namespace so library and
API records share one handler.
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Attach a single stream handler to the ``zeromiles`` logger (idempotent)."""
    global _configured
    if _configured:
        return

    level_name = (level or os.environ.get("ZEROMILES_LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger("zeromiles")
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger."""
    configure_logging()
    return logging.getLogger(name)


def log_loan_event(
    event: str,
    request_id: str,
    success: bool,
    actor: str | None = None,
    error: str | None = None,
) -> None:
    """Log a loan lifecycle API event in a consistent format."""
    logger = get_logger("zeromiles.api.events")
    parts = [f"event={event}", f"request={request_id}", f"success={success}"]
    if actor:
        parts.append(f"actor={actor}")
    if error:
        parts.append(f"error={error}")
    message = " | ".join(parts)
    if success:
        logger.info(message)
    else:
        logger.warning(message)
