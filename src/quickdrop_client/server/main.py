"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from quickdrop_client import create_drop_client
from quickdrop_client.client import DropClient
from quickdrop_client import logging as qd_logging
from quickdrop_client.config import DropClientConfig, get_settings
from quickdrop_client.exceptions import AllocationExhaustedError, DropClientError, StorageUnavailableError
from .routes import router

logger = logging.getLogger(__name__)


def create_app(
    client: Optional[DropClient] = None,
    config: Optional[DropClientConfig] = None,
    start_reaper: Optional[bool] = None,
) -> FastAPI:
    """
    Собирает приложение. Клиент можно передать готовым (тесты, встраивание);
    иначе он создаётся в lifespan из конфига/окружения и закрывается на shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "drop_client", None) is None:
            qd_logging.configure(get_settings().log_level)
            app.state.drop_client = create_drop_client(config)
            owned = True
            logger.info("QuickDrop client created from settings")
        drop_client: DropClient = app.state.drop_client

        run_reaper = start_reaper
        if run_reaper is None:
            run_reaper = drop_client.lifecycle.settings.reaper_enabled
        if run_reaper:
            drop_client.reaper.start()

        yield

        await drop_client.reaper.stop()
        if owned:
            await drop_client.aclose()
            app.state.drop_client = None

    app = FastAPI(
        title="QuickDrop API",
        version="0.3.0",
        description="Single-use, self-destructing file drops.",
        lifespan=lifespan,
    )
    app.state.drop_client = client

    @app.exception_handler(DropClientError)
    async def _drop_error(request: Request, exc: DropClientError):
        if isinstance(exc, (AllocationExhaustedError, StorageUnavailableError)):
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request body."}, status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse({"error": "Internal server error."}, status_code=500)

    @app.get("/health")
    async def health_check(request: Request):
        """Verify record store and blob store connectivity."""
        statuses = await request.app.state.drop_client.check_connections()
        healthy = all(value == "ok" for value in statuses.values())
        return JSONResponse(
            {"status": "ok" if healthy else "degraded", **statuses},
            status_code=200 if healthy else 503,
        )

    app.include_router(router)
    return app


# uvicorn quickdrop_client.server.main:app
app = create_app()
