"""FastAPI application setup."""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from src.bizhub.api.http.app_data import ApplicationDependencies, build_dependencies
from src.bizhub.api.http.middleware.limiter import create_rate_limiters, rate_limit
from src.bizhub.api.http.routers import admin, auth, payment, verticals
from src.bizhub.api.utils.app_startup import configure_logging
from src.bizhub.core.errors import BizhubError, StoreError
from src.bizhub.core.security import extract_client_ip
from src.bizhub.core.services import OidcIdentityProviderClient
from src.bizhub.core.storage import create_document_store
from src.bizhub.runtime.context import get_config

main_config = get_config()

configure_logging()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Referrer-Policy", "strict-origin-when-cross-origin"
        )
        response.headers.setdefault(
            "Permissions-Policy", "geolocation=(), microphone=()"
        )
        if main_config.app.environment == "production":
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=31536000; includeSubDomains; preload",
            )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup()
    try:
        yield
    finally:
        await shutdown()


is_production = main_config.app.environment == "production"

app = FastAPI(
    title="BizHub",
    lifespan=lifespan,
    docs_url=None if is_production else "/docs",
    redoc_url=None if is_production else "/redoc",
)

app.add_middleware(SecurityHeadersMiddleware)

__all__ = ["app", "startup", "shutdown"]

cors = main_config.app.cors
if is_production and "*" in cors.origins:
    raise RuntimeError(
        "CORS misconfigured: cannot use '*' with allow_credentials=True in production"
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors.origins,
    allow_credentials=cors.allow_credentials,
    allow_methods=cors.allow_methods,
    allow_headers=cors.allow_headers,
    max_age=cors.max_age,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    # Query strings are left out; they may carry reset tokens
    base_ctx = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client_ip": extract_client_ip(request, main_config.app.trusted_proxies),
        "user_agent": request.headers.get("user-agent", "unknown"),
    }

    start = time.perf_counter()
    with logger.contextualize(**base_ctx):
        try:
            logger.info("request.start")
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start) * 1000
            logger.bind(
                status_code=response.status_code,
                duration_ms=round(duration_ms, 1),
            ).info("request.end")

            response.headers.setdefault("X-Request-ID", request_id)
            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.bind(
                status_code=500,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            ).exception("request.error")
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@app.exception_handler(BizhubError)
async def bizhub_error_handler(request: Request, exc: BizhubError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_body(), "request_id": _request_id(request)},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Document store failure on {}: {}", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Server error", "request_id": _request_id(request)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0]["msg"] if errors else "Invalid input"
    return JSONResponse(
        status_code=400,
        content={
            "detail": first,
            "errors": jsonable_encoder(errors),
            "request_id": _request_id(request),
        },
    )


api_prefix = main_config.app.api_prefix
general_limit = [Depends(rate_limit("general"))]

app.include_router(auth.router, prefix=api_prefix, dependencies=general_limit)
app.include_router(payment.router, prefix=api_prefix, dependencies=general_limit)
app.include_router(admin.router, prefix=api_prefix, dependencies=general_limit)
for vertical_router in verticals.routers:
    app.include_router(vertical_router, prefix=api_prefix, dependencies=general_limit)


async def startup() -> None:
    config = main_config
    logger.info("Starting up application in {} environment", config.app.environment)

    if is_production and not config.session.signing_secret:
        raise RuntimeError("session.signing_secret must be set in production")

    # Tests install their own dependency container before the lifespan runs
    if getattr(app.state, "app_dependencies", None) is None:
        store = await create_document_store(config)
        rate_limiters = await create_rate_limiters(config)
        app.state.app_dependencies = build_dependencies(
            config, store, rate_limiters=rate_limiters
        )

    deps: ApplicationDependencies = app.state.app_dependencies
    provider = deps.identity_provider
    if isinstance(provider, OidcIdentityProviderClient) and config.identity_provider.jwks_uri:
        try:
            await provider.fetch_jwks()
        except Exception as e:
            logger.error("Failed to prefetch identity provider JWKS: {}", e)
            if is_production:
                raise


async def shutdown() -> None:
    logger.info("Shutting down application")
    deps: ApplicationDependencies | None = getattr(app.state, "app_dependencies", None)
    if deps is not None:
        await deps.aclose()
        app.state.app_dependencies = None


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    """Readiness check: the document store must answer."""
    deps: ApplicationDependencies | None = getattr(
        request.app.state, "app_dependencies", None
    )
    if deps is None or not await deps.store.ping():
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return JSONResponse(content={"status": "ready"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=main_config.app.host,
        port=main_config.app.port,
        access_log=False,
    )
