"""carelink FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from carelink.api import health, location, sos, ws
from carelink.core.config import settings
from carelink.core.deps import get_sos_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop location streams and pending fan-out before the loop goes away
    service = app.dependency_overrides.get(get_sos_service, get_sos_service)()
    await service.shutdown()
    logger.info("SOS background tasks stopped")


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(sos.router)
app.include_router(location.router)
app.include_router(ws.router)
