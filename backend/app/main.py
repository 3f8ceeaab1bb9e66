"""FastAPI entrypoint for the metric collector."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api.dependencies import get_metric_service, get_settings
from .api.routers import health, metrics
from .infra.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Restore snapshots on startup; flush and close storage on shutdown."""

    service = get_metric_service()
    service.start()
    logger.info(
        "collector_started",
        extra={"backend": service.storage.backend_name},
    )
    try:
        yield
    finally:
        service.shutdown()
        logger.info("collector_stopped")


async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and register routers."""

    settings = get_settings()
    configure_logging(settings.logging)
    application = FastAPI(
        title="Metric Collector API", version="0.1.0", lifespan=lifespan
    )
    application.add_exception_handler(RequestValidationError, _bad_request)
    for router in (health.router, metrics.router):
        application.include_router(router)
    return application


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual launch helper
    import uvicorn

    host, _, port = get_settings().address.rpartition(":")
    uvicorn.run(app, host=host or "127.0.0.1", port=int(port), log_level="info")
