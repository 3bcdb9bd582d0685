"""Main application entrypoint for the mediaflow upload service."""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mediaflow.api.middleware import RequestContextMiddleware
from mediaflow.api.v1 import routes_health
from mediaflow.api.v1.routes_upload import router as upload_router
from mediaflow.core.config import Settings, settings
from mediaflow.core.config_loader import ConfigLoader, YamlSettingsSource
from mediaflow.core.container import Container, build_container
from mediaflow.core.exceptions import ApiError
from mediaflow.core.logging import setup_logging

logger = logging.getLogger(__name__)


async def _load_settings() -> Settings:
    source = YamlSettingsSource(settings.SETTINGS_FILE) if settings.SETTINGS_FILE else None
    logger.info("Loading layered settings", extra={"context": {"settings_file": settings.SETTINGS_FILE}})
    return await ConfigLoader(source).load_full_config()


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Only the user-facing message leaves the process."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app(container: Optional[Container] = None, start_sweeps: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Prebuilt components; built from the layered configuration when omitted
        start_sweeps: Whether the temp-file and session sweeps run in the background

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.container = container or build_container(await _load_settings())
        await app.state.container.start(start_sweeps=start_sweeps)
        try:
            yield
        finally:
            await app.state.container.shutdown()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(ApiError, api_error_handler)

    app.include_router(routes_health.router, tags=["health"])
    app.include_router(upload_router)

    return app


# Export app instance for ASGI servers
app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
