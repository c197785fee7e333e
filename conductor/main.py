"""FastAPI entry-point exposing the orchestration runtime."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from conductor.api.chat import router as chat_router
from conductor.api.routes import router as agents_router
from conductor.api.routes import tools_router
from conductor.api.sessions import router as sessions_router
from conductor.config import config
from conductor.runtime import get_gateway, get_state_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sweeper = asyncio.create_task(get_state_store().run_sweeper(config.orchestrator.sweep_interval))
    logger.info("Conductor started (environment=%s)", config.environment)
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    if config.openai is not None:
        await get_gateway().aclose()


app = FastAPI(title="Conductor", lifespan=lifespan)
app.include_router(agents_router)
app.include_router(tools_router)
app.include_router(sessions_router)
app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
