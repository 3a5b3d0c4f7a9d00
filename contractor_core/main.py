import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from the package directory
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from contractor_core.core.config import settings, validate_config
from contractor_core.core.logging import LOGGER_NAME, configure_logging
from contractor_core.core.middleware.request_id import RequestIdMiddleware
from contractor_core.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from contractor_core.api import auth, billing, health, jobs, profile


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting contractor core...")
    try:
        yield
    finally:
        logging.getLogger(LOGGER_NAME).info("Stopping contractor core...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="Contractor Core", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # CORS (adjust origins in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.APP_BASE_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router)
    app.include_router(profile.router)
    app.include_router(billing.router)
    app.include_router(jobs.router)
    app.include_router(health.root_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("contractor_core.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
