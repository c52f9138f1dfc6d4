from __future__ import annotations
from dotenv import load_dotenv
load_dotenv(dotenv_path=".env")


import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from shesafe.analysis import HttpAnalysisClient
from shesafe.lifecycle import IncidentLifecycleManager
from shesafe.store import IncidentStore

from shesafe.incident_api import router as incident_router

from shesafe.operator_api import router as operator_router

logging.basicConfig(
    level=os.getenv("SHESAFE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_manager() -> IncidentLifecycleManager:
    client = HttpAnalysisClient()
    logger.info("Analysis client mode=%s", client.mode)
    return IncidentLifecycleManager(store=IncidentStore(), client=client)


# ----------------------------
# App
# ----------------------------

def create_app(manager: Optional[IncidentLifecycleManager] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.manager is None:
            app.state.manager = build_manager()
        yield

    app = FastAPI(
        title="SheSafe Incident Service",
        version="0.1.0",
        description="Safety incident reporting with assistant triage and an operator view.",
        lifespan=lifespan,
    )
    app.state.manager = manager

    app.include_router(incident_router)
    app.include_router(operator_router)

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
