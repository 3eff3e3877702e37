"""
Connector Manager service.

Runs the Pod Store, the Connector Pod Controller and the connector API in
one process. Several replicas run side by side in the system namespace;
they coordinate only through labels on the connector pods.

Run with:
    uvicorn ocf.connector_manager:app --port 8000
or the `ocf-connector-manager` console script.
"""

import asyncio
import logging
import os
import tracemalloc

from fastapi import FastAPI

from .config import get_settings
from .routers import connectors
from .routers.common import memory_snapshot, register_error_handlers
from .services.kubernetes.client import get_k8s_client
from .services.kubernetes.controller import ConnectorPodController
from .services.kubernetes.pod_store import PodStore

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="OCF Connector Manager")
app.include_router(connectors.router)
register_error_handlers(app)


def exit_process(error: Exception) -> None:
    """Terminate immediately so orchestration restarts this instance."""
    logger.critical(f"[ACM] Fatal: {error}. Exiting.")
    logging.shutdown()
    os._exit(1)


@app.on_event("startup")
async def startup():
    if settings.memory_profiling:
        tracemalloc.start()
        logger.info("[ACM] Memory profiling enabled")

    k8s = get_k8s_client()
    store = PodStore(core_v1=k8s.core_v1, on_fatal=exit_process)
    controller = ConnectorPodController(store, k8s, on_fatal=exit_process)

    app.state.store = store
    app.state.controller = controller

    store.start()
    app.state.controller_task = asyncio.create_task(controller.run())
    logger.info(f"[ACM] Started as {controller.identity}")


@app.on_event("shutdown")
async def shutdown():
    controller = app.state.controller
    controller.stop()
    await asyncio.gather(app.state.controller_task, return_exceptions=True)
    await app.state.store.stop()
    logger.info("[ACM] Stopped")


@app.get("/health")
async def health_check():
    controller = app.state.controller
    status = controller.health()
    status["service"] = "connector-manager"
    status["externally_available"] = settings.externally_available
    if settings.memory_profiling:
        status["memory"] = memory_snapshot()
    return status


def run():
    import uvicorn
    uvicorn.run("ocf.connector_manager:app", host=settings.host, port=settings.port)
