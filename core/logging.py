"""Process wide logging setup for the API and the realtime socket."""

import logging
import os
import sys
from contextvars import ContextVar
from logging.handlers import WatchedFileHandler
from typing import Optional

# Set by the request middleware; socket sessions leave it empty.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(request_id)-8s] [%(name)-24s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "websockets", "passlib")


class RequestIdFilter(logging.Filter):
    """Stamps every record with the ID of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)


def _has_file_handler(root: logging.Logger, path: str) -> bool:
    return any(getattr(h, "baseFilename", None) == os.path.abspath(path) for h in root.handlers)


def configure_logging(*, environment: str, log_level: str, log_path: Optional[str] = None) -> int:
    """
    Route everything through the root logger. Safe to call more than once:
    handlers are only attached the first time. Returns the numeric level.
    """
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        _attach(root, logging.StreamHandler(sys.stdout), level)

    if log_path and not _has_file_handler(root, log_path):
        try:
            log_dir = os.path.dirname(log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            _attach(root, WatchedFileHandler(log_path), level)
        except OSError as exc:
            root.warning("Cannot write logs to %s: %s", log_path, exc)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # uvicorn installs its own handlers; send its records through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
        uv_logger.setLevel(logging.WARNING if name == "uvicorn.access" else level)

    root.debug("Logging configured for %s at %s", environment, logging.getLevelName(level))
    return level
