"""FastAPI server: sync/review job API and the GitHub webhook receiver."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from reposync import config
from reposync.api import routes
from reposync.service import create_service

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Initializing workflow engine...")
    t0 = time.perf_counter()
    service = create_service()
    routes._service = service
    resumed = service.start()
    logger.info(
        "Engine ready (%.2fs), resumed %d workflow(s)", time.perf_counter() - t0, len(resumed)
    )
    yield
    logger.info("Shutting down workflow engine")
    service.stop()
    routes._service = None


app = FastAPI(title="Reposync", description="Repository sync and PR review service", lifespan=lifespan)

app.include_router(routes.router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "ok"}


def main() -> None:
    uvicorn.run("reposync.api.server:app", host=config.HOST, port=config.PORT)
