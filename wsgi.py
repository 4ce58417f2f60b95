"""Process entrypoint: serves the FastAPI app with uvicorn."""
import logging
import os

import uvicorn

from main import app  # noqa: F401  fail fast on import errors before binding the port

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    log_level = os.environ.get("LOG_LEVEL", "info").lower()
    logger.info(f"Starting uvicorn server on port {port}")

    # A single worker: presence lives in process memory
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        log_level=log_level,
        access_log=False,  # RequestLoggingMiddleware already logs every request
    )
