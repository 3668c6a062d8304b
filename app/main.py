from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from app.api import routes_auth, routes_qbo
from app.api.deps import get_app_settings
from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.services.qbo_faults import QuickBooksError
from app.services.qbo_session import TokenSession

RequestHandler = Callable[[Request], Awaitable[Response]]


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if api_key_header is None or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    session: TokenSession = app.state.token_session
    logging_utils.configure_logging(settings.log_level)
    logger = logging.getLogger("app.lifespan")
    if settings.qbo_refresh_token and not session.state.refresh_token:
        session.load_refresh_token(settings.qbo_refresh_token, settings.qbo_realm_id)
    logger.info(
        "application_startup",
        extra={
            "environment": settings.environment,
            "seeded_refresh_token": session.state.refresh_token is not None,
        },
    )
    try:
        yield
    finally:
        logger.info("application_shutdown")


def _error_response(request: Request, status_code: int, message: str, details: Any = None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    payload = {
        "code": status_code,
        "message": message,
        "details": details,
        "correlation_id": request_id,
    }
    response = JSONResponse(status_code=status_code, content=payload)
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


def create_app(settings: Optional[Settings] = None, session: Optional[TokenSession] = None) -> FastAPI:
    settings = settings or get_settings()
    docs_kwargs: dict[str, Any] = {}
    if not settings.allow_docs_without_auth:
        # interactive docs are only reachable when explicitly allowed
        docs_kwargs = {"docs_url": None, "redoc_url": None, "openapi_url": None}
    app = FastAPI(
        title="QuickBooks Session Proxy",
        version=settings.app_version,
        lifespan=lifespan,
        **docs_kwargs,
    )
    app.state.settings = settings
    app.state.token_session = session or TokenSession(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestHandler):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        logging_utils.set_request_context(request_id=request_id)
        start = perf_counter()
        logger = logging.getLogger("app.request")
        request.state.response_status = None
        try:
            response = await call_next(request)
            request.state.response_status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        except Exception:
            request.state.response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
            raise
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": request.state.response_status,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            logging_utils.clear_request_context()

    @app.exception_handler(QuickBooksError)
    async def quickbooks_exception_handler(request: Request, exc: QuickBooksError) -> JSONResponse:
        logger = logging.getLogger("app.errors")
        logger.warning(
            "quickbooks_error",
            extra={
                "error_type": type(exc).__name__,
                "status": exc.status_code,
                "qbo_error_code": exc.code,
                "correlation_id": getattr(request.state, "request_id", None),
            },
        )
        details = exc.to_details() or None
        return _error_response(request, exc.status_code, exc.message, details)

    @app.exception_handler(httpx.HTTPError)
    async def upstream_transport_handler(request: Request, exc: httpx.HTTPError) -> JSONResponse:
        logger = logging.getLogger("app.errors")
        logger.error(
            "qbo_transport_error",
            extra={"error_type": type(exc).__name__, "error": str(exc)},
        )
        return _error_response(
            request,
            status.HTTP_502_BAD_GATEWAY,
            "QuickBooks request failed",
            {"error_type": type(exc).__name__},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return _error_response(request, exc.status_code, exc.detail)
        return _error_response(request, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger = logging.getLogger("app.errors")
        logger.exception(
            "unhandled_error",
            extra={"correlation_id": getattr(request.state, "request_id", None)},
        )
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    protected_router = APIRouter(prefix="/quickbooks", dependencies=[Depends(enforce_api_key)])
    protected_router.include_router(routes_auth.router)
    protected_router.include_router(routes_qbo.router)
    app.include_router(protected_router)
    app.include_router(routes_auth.public_router, prefix="/quickbooks")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        factory=False,
    )


if __name__ == "__main__":
    run()
