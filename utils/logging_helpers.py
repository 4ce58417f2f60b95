"""
Helpers that append ``key=value`` context (acting user, chat, group...) to log lines.

The request ID is added by the filter in ``core.logging``, so it is not repeated here.
"""

import logging
from typing import Optional


def format_context(message: str, user_id: Optional[int] = None, **context) -> str:
    parts = [f"user_id={user_id}"] if user_id else []
    parts.extend(f"{key}={value}" for key, value in context.items() if value is not None)
    if not parts:
        return message
    return f"{message} | {' | '.join(parts)}"


def log_info(logger: logging.Logger, message: str, user_id: Optional[int] = None, **context):
    logger.info(format_context(message, user_id, **context))


def log_warning(logger: logging.Logger, message: str, user_id: Optional[int] = None, **context):
    logger.warning(format_context(message, user_id, **context))


def log_error(
    logger: logging.Logger,
    message: str,
    user_id: Optional[int] = None,
    exc_info: bool = False,
    **context,
):
    """Log at ERROR; pass ``exc_info=True`` from inside an ``except`` block to keep the traceback."""
    logger.error(format_context(message, user_id, **context), exc_info=exc_info)


def log_debug(logger: logging.Logger, message: str, user_id: Optional[int] = None, **context):
    logger.debug(format_context(message, user_id, **context))
