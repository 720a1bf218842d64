from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.api.v1.deps import error_detail, http_status_for
from app.api.v1.router import api_router
from app.core.config import settings
from app.core.errors import SchedulingError
from app.core.logging import configure_logging
from app.db.redis import redis_client
from app.db.session import engine

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("startup env=%s timezone=%s", settings.app_env, settings.scheduling_timezone)
    yield
    await redis_client.aclose()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    default_response_class=ORJSONResponse,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_prefix)

Instrumentator().instrument(app).expose(app)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> ORJSONResponse:
    logger.warning("scheduling_error path=%s status=%s error=%s", request.url.path, exc.status, exc.message)
    return ORJSONResponse(status_code=http_status_for(exc.status), content={"detail": error_detail(exc)})


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
