import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from auth import decode_access_token, token_from_connection
from config import (
    APP_LOG_PATH,
    APP_NAME,
    APP_VERSION,
    CORS_ORIGINS,
    ENVIRONMENT,
    LOG_LEVEL,
    PRESENCE_ENABLED,
)
from core.db import create_tables, get_db_context
from core.logging import configure_logging, request_id_var
from core.presence import PresenceDirectory
from core.sequences import seed_counters
from routers.auth.api import router as auth_router
from routers.groups.api import router as groups_router
from routers.messaging.api import router as messaging_router
from routers.users.api import router as users_router

configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL, log_path=APP_LOG_PATH)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=APP_NAME,
    description="Backend API for Chatter - accounts, friends, groups and realtime chat",
    version=APP_VERSION,
    swagger_ui_parameters={
        "docExpansion": "none",
        "displayRequestDuration": True,
        "filter": True,
    },
)

# Presence lives for the whole process; the startup and shutdown hooks reset it.
app.state.presence = PresenceDirectory()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())[:8]  # Short ID for readability
        request_id_var.set(request_id)
        request.state.request_id = request_id

        start_time = time.time()

        user_id = None
        token = token_from_connection(request)
        if token:
            try:
                user_id = decode_access_token(token)
            except HTTPException:
                user_id = None  # The route dependency reports the 401

        query_str = f"?{request.url.query}" if request.query_params else ""
        logger.info(
            f"REQUEST | id={request_id} | method={request.method} | path={request.url.path}{query_str} | "
            f"user_id={user_id or 'anonymous'} | ip={request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                f"RESPONSE | id={request_id} | method={request.method} | path={request.url.path} | "
                f"status={response.status_code} | time={process_time:.3f}s | user_id={user_id or 'anonymous'}"
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"ERROR | id={request_id} | method={request.method} | path={request.url.path} | "
                f"error={type(e).__name__}: {str(e)} | time={process_time:.3f}s | user_id={user_id or 'anonymous'}",
                exc_info=True,
            )
            raise


# Request logging before CORS so it sees every request
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"],
    expose_headers=["X-Request-ID", "X-Retry-After"],
)

app.include_router(auth_router)
app.include_router(messaging_router)
app.include_router(groups_router)
app.include_router(users_router)

if PRESENCE_ENABLED:
    logger.info("Presence feature enabled - realtime socket registered at /ws")
else:
    logger.info("Presence feature disabled")


@app.on_event("startup")
async def startup_event():
    create_tables()
    with get_db_context() as db:
        seed_counters(db)
    app.state.presence.clear()

    from fastapi.routing import APIRoute

    logger.info("=== Registered Routes ===")
    for route in app.routes:
        if isinstance(route, APIRoute):
            methods = ",".join(sorted(route.methods))
            logger.info(f"{methods:8} {route.path}")
    logger.info("=== End of Routes ===")
    logger.info(f"{APP_NAME} started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    online = len(app.state.presence)
    app.state.presence.clear()
    logger.info(f"{APP_NAME} shutting down, dropped {online} live connections")


@app.get("/")
async def read_root():
    """
    Root endpoint to check if the server is running.
    Returns basic API information.
    """
    return {
        "status": "online",
        "message": f"Welcome to {APP_NAME}!",
        "version": APP_VERSION,
        "environment": ENVIRONMENT,
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "online": len(app.state.presence)}
