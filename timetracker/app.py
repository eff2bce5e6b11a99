"""
FastAPI application entry point for the time tracking service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from timetracker.config import get_settings
from timetracker.context import AppContext
from timetracker.errors import TimeTrackerError
from timetracker.routes import router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    context: AppContext = app.state.context
    context.init()
    context.install_signal_handlers()
    try:
        yield
    finally:
        context.shutdown()


async def handle_timetracker_error(request: Request, exc: TimeTrackerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.as_dict()})


async def handle_request_validation(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "validation_error",
                "message": "Invalid request",
                "details": {"errors": jsonable_encoder(exc.errors())},
            }
        },
    )


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    settings = context.settings if context is not None else get_settings()
    configure_logging(settings.log_level)
    if context is None:
        context = AppContext.from_settings(settings)
    app = FastAPI(title="Time Tracker Backend", version="0.1.0", lifespan=lifespan)
    app.state.context = context
    app.add_exception_handler(TimeTrackerError, handle_timetracker_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
