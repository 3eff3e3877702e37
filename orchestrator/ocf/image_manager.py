"""
Image Manager service.

Installs connector images into the configured registry through the
containerd socket it shares with its sidecar daemon.

Run with:
    uvicorn ocf.image_manager:app --port 8000
or the `ocf-image-manager` console script.
"""

import asyncio
import logging
import tracemalloc

from fastapi import FastAPI

from .config import get_settings
from .errors import ConfigurationError
from .routers import images
from .routers.common import memory_snapshot, register_error_handlers
from .services.registry.manager import get_registry_manager

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="OCF Image Manager")
app.include_router(images.router)
register_error_handlers(app)

# Registry reachability is probed this often for /health
PROBE_INTERVAL_SECONDS = 60


async def registry_probe_loop():
    """Background task keeping the registry's last-known reachability fresh."""
    manager = app.state.registry
    while True:
        reachable = await manager.probe()
        if not reachable:
            logger.warning(f"[AIM] Registry unreachable: {manager.last_error}")
        await asyncio.sleep(PROBE_INTERVAL_SECONDS)


@app.on_event("startup")
async def startup():
    if settings.memory_profiling:
        tracemalloc.start()
        logger.info("[AIM] Memory profiling enabled")

    try:
        manager = get_registry_manager()
    except ConfigurationError as e:
        logger.critical(f"[AIM] Invalid configuration: {e}")
        raise

    app.state.registry = manager

    # containerd may still be starting in the sidecar; installs retry on their own
    if not await manager.runtime.ping():
        logger.warning(f"[AIM] containerd not reachable yet at {manager.runtime.address}")

    app.state.probe_task = asyncio.create_task(registry_probe_loop())
    logger.info(f"[AIM] Started with {manager.implementation} backend")


@app.on_event("shutdown")
async def shutdown():
    app.state.probe_task.cancel()
    await asyncio.gather(app.state.probe_task, return_exceptions=True)


@app.get("/health")
async def health_check():
    manager = app.state.registry
    status = manager.health()
    status["service"] = "image-manager"
    status["externally_available"] = settings.externally_available
    if settings.memory_profiling:
        status["memory"] = memory_snapshot()
    return status


def run():
    import uvicorn
    uvicorn.run("ocf.image_manager:app", host=settings.host, port=settings.port)
