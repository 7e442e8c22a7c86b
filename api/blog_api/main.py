from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from blog_api.api.router import api_router
from blog_api.core.config import get_settings
from blog_api.core.telemetry import ApiTelemetry, configure_api_logging
from blog_api.services.runtime import build_runtime

settings = get_settings()
telemetry = ApiTelemetry(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Built inside the running loop: the coordinator's queue and worker tasks belong to it.
    runtime = build_runtime(get_settings())
    await runtime.start()
    app.state.runtime = runtime
    logger.info(
        "blog api started store=%s search=%s",
        get_settings().store_backend,
        get_settings().search_backend,
    )
    try:
        yield
    finally:
        app.state.runtime = None
        await runtime.close()
        telemetry.shutdown()


configure_api_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
telemetry.instrument(app)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
