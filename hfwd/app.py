"""
FastAPI application factory for hfwd.

Every method and path is routed to the forwarding handler. The lifespan
handler closes the upstream client on shutdown.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hfwd import __version__
from hfwd.logging_config import get_logger
from hfwd.proxy.handler import ForwardingHandler

logger = get_logger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def create_application(handler: ForwardingHandler) -> FastAPI:
    """Create the ASGI application serving ``handler``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        logger.info("Starting hfwd", version=__version__, destination=str(handler.destination))
        yield
        logger.info("Shutting down hfwd")
        await handler.aclose()

    # No docs routes: every path belongs to the destination
    app = FastAPI(
        title="hfwd",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.handler = handler

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next: Any) -> Any:
        """Add request ID to context for logging correlation."""
        request_id = request.headers.get("X-Request-ID")
        if request_id:
            structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            if request_id:
                structlog.contextvars.unbind_contextvars("request_id")

        if request_id and "x-request-id" not in response.headers:
            response.headers["X-Request-ID"] = request_id

        return response

    # Exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    app.add_api_route(
        "/{path:path}",
        handler.handle,
        methods=PROXY_METHODS,
        response_model=None,
        include_in_schema=False,
    )

    return app
