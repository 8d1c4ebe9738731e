import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from approval_routing.core.config import settings
from approval_routing.core.errors import (
    ApprovalRoutingError,
    ConfigurationError,
    ConfigurationVersionMismatchError,
    InvalidDelegationError,
    InvalidTransitionError,
    LockTimeoutError,
    NoTierMatchedError,
    NotEligibleError,
    NotFoundError,
    StatusProjectionError,
)
from approval_routing.core.logging import setup_logging

setup_logging()

logger = logging.getLogger(__name__)

# Initialize Sentry error monitoring
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )
    logger.info("Sentry initialized")


app = FastAPI(
    title="Approval Routing Engine",
    version="0.1.0",
    docs_url="/api/docs" if settings.APP_ENV != "production" else None,
    redoc_url="/api/redoc" if settings.APP_ENV != "production" else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first; lookup walks the MRO so subclasses not listed fall back to their parent.
ERROR_STATUS: dict[type[ApprovalRoutingError], int] = {
    NoTierMatchedError: 422,
    ConfigurationError: 422,
    InvalidDelegationError: 422,
    InvalidTransitionError: 409,
    ConfigurationVersionMismatchError: 409,
    NotEligibleError: 403,
    NotFoundError: 404,
    LockTimeoutError: 503,
    StatusProjectionError: 500,
}


def status_for(exc: ApprovalRoutingError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


@app.exception_handler(ApprovalRoutingError)
async def approval_routing_error_handler(request: Request, exc: ApprovalRoutingError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


# ─── Routers ───
from approval_routing.api.v1.router import api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "env": settings.APP_ENV}
