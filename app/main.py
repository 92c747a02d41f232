import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from app.api.dependencies.strava import shutdown_webhook_executor
from app.api.routes import api_router
from app.core.config import get_settings
from app.core.logging import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging(get_settings())
    logger.info("application_starting")
    yield
    logger.info("application_stopping")
    shutdown_webhook_executor()


def create_app() -> FastAPI:
    application = FastAPI(title="Strava Activity Sync", lifespan=lifespan)

    @application.middleware("http")
    async def bind_request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=str(uuid.uuid4()),
            method=request.method,
            path=request.url.path,
        )
        response = await call_next(request)
        logger.info("request_processed", status_code=response.status_code)
        return response

    application.include_router(api_router)
    return application


app = create_app()
