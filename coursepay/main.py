from contextlib import asynccontextmanager
from typing import Any, cast

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import text
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from coursepay.api import admin, billing, webhooks
from coursepay.core.config import settings
from coursepay.core.errors import ConfigurationError, CoursePayError, capture_exception, init_sentry
from coursepay.core.logging_config import configure_logging
from coursepay.db import engine
from coursepay.middleware.context import RequestContextMiddleware

configure_logging(json_output=settings.LOG_JSON or None)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "CoursePay API starting",
        environment=settings.ENVIRONMENT,
        webhook_verifiers=[name for name, _ in settings.webhook_secrets()],
        deleted_subscription_policy=settings.DELETED_SUBSCRIPTION_POLICY,
    )
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    yield


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)


@app.exception_handler(CoursePayError)
async def coursepay_error_handler(request: Request, exc: CoursePayError) -> JSONResponse:
    if exc.status_code >= 500:
        capture_exception(exc, context={"path": request.url.path})
    else:
        logger.info("Request refused", status_code=exc.status_code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


origins = list({o for o in [settings.SITE_URL, "http://localhost:5173", "http://localhost:3000"] if o})

# Only the platform proxy may rewrite the client address
app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=settings.FORWARDED_ALLOW_IPS)
app.add_middleware(cast(Any, RequestContextMiddleware))
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(billing.router, prefix=settings.API_V1_STR, tags=["billing"])
app.include_router(webhooks.router, prefix=settings.API_V1_STR, tags=["webhooks"])
app.include_router(admin.router, prefix=settings.API_V1_STR, tags=["admin"])


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
def health_ready():
    """
    Readiness: the database answers and the settings needed to take payments
    are present.
    """
    checks: dict[str, str] = {}

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))
        checks["database"] = "unavailable"

    try:
        settings.require("SECRET_KEY", "STRIPE_SECRET_KEY")
        if not settings.webhook_secrets():
            raise ConfigurationError("No webhook signing secret configured")
        checks["configuration"] = "ok"
    except ConfigurationError as e:
        checks["configuration"] = e.message

    ready = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
