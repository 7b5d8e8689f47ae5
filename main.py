import asyncio
import logging
import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from starlette.middleware.base import BaseHTTPMiddleware

from config import APP_NAME, APP_VERSION, ENVIRONMENT, LOG_LEVEL, REALTIME_BACKEND
from core.logging import configure_logging, request_id_var
from routers.messaging.api import router as messaging_router

log_level = configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=APP_NAME,
    description="Conversations, messages, read receipts and realtime delivery for TravelConnect",
    version=APP_VERSION,
    swagger_ui_parameters={
        "docExpansion": "none",
        "displayRequestDuration": True,
        "filter": True,
        "defaultModelsExpandDepth": 2,
        "defaultModelExpandDepth": 2,
    },
)


# Add security scheme
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=APP_NAME,
        version=APP_VERSION,
        description="""
        TravelConnect Messaging API

        ## Authentication
        Every endpoint requires a Bearer JWT issued by the auth service.
        The realtime socket accepts the same token as a `token` query parameter.

        Format: `Authorization: Bearer <your_access_token>`
        """,
        routes=app.routes,
    )
    openapi_schema["components"]["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"bearerAuth": []}]
    app.openapi_schema = openapi_schema
    return openapi_schema


app.openapi = custom_openapi


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
        request.state.request_id = request_id

        start_time = time.time()
        query_str = f"?{request.url.query}" if request.query_params else ""
        logger.info(
            f"REQUEST | method={request.method} | path={request.url.path}{query_str} | "
            f"ip={request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"ERROR | method={request.method} | path={request.url.path} | "
                f"error={type(e).__name__}: {e} | time={time.time() - start_time:.3f}s",
                exc_info=True,
            )
            raise

        logger.info(
            f"RESPONSE | method={request.method} | path={request.url.path} | "
            f"status={response.status_code} | time={time.time() - start_time:.3f}s"
        )
        response.headers["X-Request-ID"] = request_id
        return response


# Add request logging middleware (before CORS so it logs all requests)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Error-Code", "X-Retry-After"],
)

app.include_router(messaging_router)


@app.on_event("startup")
async def startup_event():
    logger.info(f"{APP_NAME} started (realtime backend: {REALTIME_BACKEND})")

    from fastapi.routing import APIRoute

    for route in app.routes:
        if isinstance(route, APIRoute):
            logger.debug(f"{','.join(route.methods):8} {route.path}")

    if REALTIME_BACKEND == "redis":
        from routers.messaging.fanout import run_redis_relay

        app.state.relay_task = asyncio.create_task(run_redis_relay())


@app.on_event("shutdown")
async def shutdown_event():
    relay_task = getattr(app.state, "relay_task", None)
    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        from utils.redis_pubsub import close_redis

        await close_redis()
    logger.info(f"{APP_NAME} stopped")


@app.get("/")
async def read_root():
    """
    Root endpoint to check if the server is running.
    """
    return {
        "status": "online",
        "message": f"Welcome to {APP_NAME}",
        "version": APP_VERSION,
        "environment": os.getenv("APP_ENV", ENVIRONMENT),
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
