"""FastAPI application entrypoint.

create_app wires CORS, the exception handlers that shape every error as
{"success": false, "error": ...}, the health/docs endpoints and the routers under
API_PREFIX. Services are built once in the lifespan unless a prebuilt bundle is
passed in (tests inject fakes that way).

Run with:
    uvicorn askgate.main:app --port 3000
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from askgate.config import Settings, settings
from askgate.deps import Services, build_services
from askgate.errors import GatewayError, describe
from askgate.obs import configure_tracing
from askgate.orchestrator import METADATA_HEADER, error_response
from askgate.routes import ask_router, customers_router

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

ENDPOINTS = {
    "customers": {
        "POST /customers/register": "Register a new customer",
        "GET /customers": "List all customers",
        "GET /customers/{customerId}": "Get customer details",
        "PUT /customers/{customerId}": "Update customer details",
        "DELETE /customers/{customerId}": "Deactivate a customer",
        "GET /customers/stats/overview": "Customer statistics",
        "GET /customers/{customerId}/test-connection": "Test the customer datastore connection",
    },
    "ask": {
        "POST /ask": "Spoken answer (audio/mpeg), x-api-key required",
        "POST /ask/text": "Text answer (JSON), x-api-key required",
        "GET /voices": "List available voices, x-api-key required",
    },
    "apiKeys": {
        "GET /customers/{customerId}/api-key": "Get the customer's active API key",
        "POST /customers/{customerId}/regenerate-api-key": "Rotate the customer's API key",
        "GET /customers/api-keys/list": "List all API keys (redacted)",
    },
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(services: Optional[Services] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the application.

    Args:
        services: Prebuilt component bundle; built from settings at startup if omitted.
        app_settings: Settings used for CORS, prefix and (when building) services.
    """
    s = services.settings if services is not None else (app_settings or settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services(s)
        logger.info("Service started: environment=%s prefix=%s", s.ENVIRONMENT, s.API_PREFIX)
        try:
            yield
        finally:
            if owned:
                app.state.services.close()

    app = FastAPI(title="AskGate API", version=VERSION, lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in s.ALLOWED_ORIGIN.split(",") if o.strip()] or ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "x-api-key", "x-admin-key"],
        expose_headers=[METADATA_HEADER],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        info = describe(exc, {"method": request.method, "path": request.url.path})
        if exc.status_code >= 500:
            logger.error("Request failed: %s", info, exc_info=exc.__cause__)
        else:
            logger.warning("Request rejected: %s", info)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _validation_message(exc)
        logger.warning("Invalid request: method=%s path=%s error=%s", request.method, request.url.path, message)
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning("HTTP %d: method=%s path=%s", exc.status_code, request.method, request.url.path)
        message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", describe(exc, {"method": request.method, "path": request.url.path}))
        return error_response(exc)

    @app.get("/")
    def root():
        return {
            "message": "Multi-tenant product question answering API",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get(f"{s.API_PREFIX}/health")
    def health(request: Request):
        """Liveness check.

        Returns:
            dict: status, process uptime in seconds, timestamp and environment.
        """
        return {
            "status": "OK",
            "uptime": round(time.time() - request.app.state.started_at, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": s.ENVIRONMENT,
        }

    @app.get(f"{s.API_PREFIX}/docs")
    def docs():
        prefixed = {
            group: {f"{route.split(' ', 1)[0]} {s.API_PREFIX}{route.split(' ', 1)[1]}": text for route, text in items.items()}
            for group, items in ENDPOINTS.items()
        }
        return {"message": "API documentation", "endpoints": prefixed}

    app.include_router(customers_router, prefix=s.API_PREFIX)
    app.include_router(ask_router, prefix=s.API_PREFIX)
    return app


configure_logging(settings.LOG_LEVEL)
configure_tracing()
app = create_app()
