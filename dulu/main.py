from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from dulu.config import Settings
from dulu.controllers import v1
from dulu.db import init_db
from dulu.logger import setup_logging

settings = Settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    logger.info("PawaPay environment: %s", settings.pawapay_environment)
    yield


app = FastAPI(
    title="DULU Payments API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(v1.router)

Instrumentator().instrument(app).expose(app)
