"""HFE Entitlement API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hfe_api.config.env import get_rate_limit_settings
from hfe_api.context import provider_var, request_id_var, user_id_var
from hfe_api.db.redis_client import RedisClient
from hfe_api.errors import EntitlementEngineError
from hfe_api.rate_limiter import NoOpRateLimiter, RateLimiter, build_rate_limiter
from hfe_api.routers import account, checkout, entitlements, health, subscription, webhooks
from hfe_api.schemas import ProblemDetail
from hfe_api.utils import configure_json_logging

# Only /v1/* (client-facing) traffic is metered; webhooks and probes are not
RATE_LIMITED_PREFIX = "/v1/"

DEV_CLIENT_ORIGINS = [
    "http://localhost:8081",
    "http://localhost:19006",
    "http://127.0.0.1:8081",
]

app = FastAPI(
    title="Health Freak Entitlement API",
    description="Subscription entitlement engine: checkout, provider webhooks, cancellation and account deletion.",
    version="1.0.0",
)

# HFE_JSON_LOGS=false switches to plain stdlib logs (pytest sets this)
if os.getenv("HFE_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    # Credentialed CORS cannot use "*", so origins are always explicit
    configured = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()]
    return configured or DEV_CLIENT_ORIGINS


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["RateLimit-Policy", "RateLimit", "Retry-After", "X-Request-ID"],
)


def _problem_response(
    status_code: int,
    problem_type: str,
    title: str,
    detail: str,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """application/problem+json response; instance ties it to the request log lines."""
    request_id = request_id_var.get() or str(uuid.uuid4())
    problem = ProblemDetail(
        type=f"urn:hfe:problem:{problem_type}",
        title=title,
        status=status_code,
        detail=detail,
        instance=f"urn:hfe:trace:{request_id}",
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def _status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return f"HTTP {status_code}"


def _caller_key(request: Request) -> str:
    """Session token when present (hashed by the limiter), else client address."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        return token
    return request.client.host if request.client else "anonymous"


# Middlewares run in reverse registration order: request id (registered last)
# wraps completion logging, which wraps rate limiting.


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Shared fixed-window limit on /v1/* with RateLimit-Policy / RateLimit headers.

    Blocked callers get 429 problem+json plus Retry-After. Successful responses
    carry the headers unless the handler already set them.
    """
    if not request.url.path.startswith(RATE_LIMITED_PREFIX):
        return await call_next(request)

    # Set at startup; tests may replace it
    limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = NoOpRateLimiter()

    result = limiter.check_rate_limit(_caller_key(request), request.url.path)

    if not result.allowed:
        logger.warning(
            "RATE_LIMIT_EXCEEDED",
            extra={"path": request.url.path, "quota": result.quota, "window": result.window},
        )
        return _problem_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "http-429",
            "Too Many Requests",
            "Rate limit exceeded. Please retry after the specified time.",
            headers=result.headers(),
        )

    response = await call_next(request)
    if 200 <= response.status_code < 300:
        for name, value in result.headers().items():
            response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """One "http.request.completed" line per request, also when the handler raised.

    user_id / provider contextvars are reset on both sides of the request.
    """
    user_id_var.set("")
    provider_var.set("")
    started = time.perf_counter()
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        user_id_var.set("")
        provider_var.set("")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept X-Request-ID from the client or mint one, and echo it back."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(EntitlementEngineError)
async def entitlement_error_handler(request: Request, exc: EntitlementEngineError) -> JSONResponse:
    """Engine errors: the client sees exc.detail, the log gets exc.log_detail."""
    log_extra = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": request.url.path,
        "error_msg": exc.log_detail,
    }
    if exc.status_code >= 500:
        logger.error("REQUEST_FAILED", extra=log_extra)
    else:
        logger.warning("REQUEST_REJECTED", extra=log_extra)

    return _problem_response(exc.status_code, exc.error_code.lower(), exc.title, exc.detail)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTPException → problem+json.

    Session auth raises with a ready-made problem dict as detail; that is
    passed through together with its WWW-Authenticate header.
    """
    headers = dict(exc.headers or {})
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        headers.setdefault("Retry-After", "60")

    if isinstance(exc.detail, dict) and {"status", "title"} <= exc.detail.keys():
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.detail,
            media_type="application/problem+json",
            headers=headers,
        )

    phrase = _status_phrase(exc.status_code)
    return _problem_response(
        exc.status_code,
        f"http-{exc.status_code}",
        phrase,
        exc.detail if exc.detail is not None else phrase,
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are 400, reporting the first offending field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", []))

    return _problem_response(
        status.HTTP_400_BAD_REQUEST,
        "validation-error",
        "Request Validation Failed",
        f"Invalid field '{field}': {first.get('msg', 'Validation error')}",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=True)
    return _problem_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal-error",
        "Internal Server Error",
        "Something went wrong. Please try again.",
    )


app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(checkout.router)
app.include_router(entitlements.router)
app.include_router(subscription.router)
app.include_router(account.router)


@app.on_event("startup")
async def startup_event():
    """Build the shared rate limiter: Redis-backed when REDIS_URL is set, else no-op."""
    quota, window = get_rate_limit_settings()
    redis_client = RedisClient.get_client() if RedisClient.is_configured() else None
    app.state.rate_limiter = build_rate_limiter(redis_client, quota=quota, window=window)
    logger.info(
        "RATE_LIMITER_INITIALIZED",
        extra={
            "backend": "redis" if redis_client is not None else "noop",
            "quota": quota,
            "window": window,
        },
    )
