from contextlib import asynccontextmanager
from typing import Any, Optional, cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from fiatgate.api import admin, cron, health, webhooks
from fiatgate.container import Container, build_container
from fiatgate.core.errors import SettlementGateError, init_sentry
from fiatgate.core.logging_config import get_logger
from fiatgate.core.scheduler import start_scheduler
from fiatgate.db import create_db_and_tables
from fiatgate.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: Container = app.state.container
    settings = container.settings

    logger.info("Settlement gate starting", environment=settings.ENVIRONMENT)
    create_db_and_tables(container.engine)

    scheduler = None
    if settings.RUN_SCHEDULER:
        scheduler = start_scheduler(container)
    else:
        logger.info("RUN_SCHEDULER is false, skipping scheduler startup in this process")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        container.close()


async def settlement_error_handler(request: Request, exc: SettlementGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", code=exc.code, error=exc.message, metadata=exc.metadata)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(
            {
                "code": "validation_error",
                "message": "Request validation failed",
                "metadata": {"errors": exc.errors()},
            }
        ),
    )


def create_app(container: Optional[Container] = None) -> FastAPI:
    container = container or build_container()
    settings = container.settings

    init_sentry(
        settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    # Trust X-Forwarded-* from the load balancer
    app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=["*"])
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(SettlementGateError, cast(Any, settlement_error_handler))
    app.add_exception_handler(RequestValidationError, cast(Any, request_validation_handler))

    app.include_router(webhooks.router, prefix=settings.API_V1_STR)
    app.include_router(cron.router, prefix=settings.API_V1_STR)
    app.include_router(admin.router, prefix=settings.API_V1_STR)
    app.include_router(health.router)

    return app


app = create_app()
