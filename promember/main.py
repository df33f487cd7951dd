import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from promember.core.config import settings, validate_config
from promember.core.container import Services, build_services_from_env
from promember.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from promember.core.logging import configure_logging
from promember.core.middleware.request_id import RequestIdMiddleware
from promember.api import admin, billing, health, membership

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("promember")
    logger.info("Starting promember backend...")
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services_from_env(settings)
    try:
        yield
    finally:
        logger.info("Stopping promember backend...")


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="promember", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(membership.router, prefix="/api", tags=["membership"])
    app.include_router(admin.router, tags=["admin"])
    app.include_router(health.root_router, tags=["health"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("promember.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
