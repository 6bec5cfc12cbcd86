"""FastAPI gateway main application."""

import os
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from wabridge.infra.logging import app_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    from wabridge.services.runtime import build_runtime, init_storage

    # Startup
    app_logger.info("Application starting up")
    init_storage()
    runtime = build_runtime()
    await runtime.start()
    app.state.runtime = runtime

    yield

    # Shutdown
    app_logger.info("Application shutting down")
    await runtime.stop()
    app.state.runtime = None

    # Close database connections
    from wabridge.infra.database import engine
    engine.dispose()


app = FastAPI(
    title="WhatsApp amoCRM Gateway",
    description="""
    Relays messages between WhatsApp accounts and the amoCRM chat channel.

    ## Features

    - **Incoming relay**: WhatsApp messages are queued and delivered to the CRM conversation
    - **Outgoing relay**: CRM replies arrive by webhook and are sent from the paired account
    - **Accounts**: Pair, inspect, and remove WhatsApp accounts
    - **Queues**: Inspect channel depth and dead-lettered messages

    ## Authentication

    Administrative endpoints require the admin API key via:
    - Header: `X-API-Key: <your-api-key>`
    - Query parameter: `?api_key=<your-api-key>`
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Webhooks",
            "description": "Webhook endpoints for the CRM chat channel and the protocol gateway",
        },
        {
            "name": "Accounts",
            "description": "Pair and manage WhatsApp accounts and their CRM binding",
        },
        {
            "name": "Queues",
            "description": "Queue depth and dead-letter inspection",
        },
        {
            "name": "Health",
            "description": "Health check and monitoring endpoints",
        },
    ],
)

# Setup middleware
from wabridge.infra.middleware import RequestIDMiddleware, RequestLoggingMiddleware

# Last added runs first; the request id must exist before logging reads it
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

# Import and register routers
from wabridge.api.routers import accounts, health, queues, webhooks

app.include_router(webhooks.router)
app.include_router(accounts.router)
app.include_router(queues.router)
app.include_router(health.router)


# Configure OpenAPI security schemes
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {}).setdefault("securitySchemes", {})
    openapi_schema["components"]["securitySchemes"]["ApiKeyAuth"] = {
        "type": "apiKey",
        "in": "header",
        "name": "X-API-Key",
        "description": "Admin API key. Provide it in the X-API-Key header or as api_key query parameter.",
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

MAX_REQUEST_SIZE = 1024 * 1024  # 1MB


@app.middleware("http")
async def request_size_limit_middleware(request: Request, call_next):
    """Enforce request size limits."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE:
        return JSONResponse(
            status_code=413,
            content={"detail": f"Request too large. Maximum size: {MAX_REQUEST_SIZE} bytes"},
        )
    return await call_next(request)


# Error handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    error_id = str(uuid.uuid4())
    app_logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"error_id": error_id})
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error. Error ID: {error_id}"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        timeout_keep_alive=30,
        timeout_graceful_shutdown=30,
    )
