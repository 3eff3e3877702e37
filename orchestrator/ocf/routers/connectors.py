"""
Connector Manager API Router.

Endpoints used by the dashboard to run connectors:
- POST /deploy: install a connector (create its pod)
- GET /wait: wait until a connector answers on its gRPC port, refreshing its ticket
- POST /refresh: push back a connector's garbage collection deadline
- DELETE /delete: uninstall a connector (idempotent)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from ..config import get_settings
from ..errors import PermanentItemError
from ..services.kubernetes.controller import ConnectorPodController
from ..utils.resource_naming import connector_pod_name, image_reference
from .common import envelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


class UninstalledConnector(BaseModel):
    pod_name: str = Field(..., description="Pod that was (or will be) deleted")


def get_controller(request: Request) -> ConnectorPodController:
    return request.app.state.controller


@router.post("/deploy")
async def deploy(
    request: Request,
    name: str = Query(..., description="Connector identifier"),
    tag: Optional[str] = Query(None, description="Image tag in the connector repository"),
    image: Optional[str] = Query(None, description="Full image reference (overrides tag)"),
    ttl: Optional[int] = Query(None, description="Keep-alive period in seconds"),
):
    """Install a connector. The pod is created by the reconciliation loop."""
    settings = get_settings()
    if image is None:
        if not tag:
            raise PermanentItemError("either tag or image is required")
        image = image_reference(settings.connector_registry, settings.connector_repository, tag)

    deployed = get_controller(request).request_install(name, image, ttl)
    return envelope(deployed)


@router.get("/wait")
async def wait(request: Request, id: str = Query(..., description="Connector pod name")):
    """
    Block until the connector is running and reachable.

    Returns its address with a freshly refreshed keep-alive ticket.
    """
    controller = get_controller(request)
    address = await controller.wait_ready(id)
    keep_alive = await controller.refresh(id)
    return envelope(address.model_copy(update={"keep_alive": keep_alive}))


@router.post("/refresh")
async def refresh(request: Request, ticket: str = Query(..., description="Connector pod name")):
    keep_alive = await get_controller(request).refresh(ticket)
    return envelope(keep_alive)


@router.delete("/delete")
async def delete(
    request: Request,
    id: Optional[str] = Query(None, description="Connector pod name"),
    name: Optional[str] = Query(None, description="Connector identifier"),
):
    """Uninstall a connector by pod name or by connector identifier."""
    if id is None:
        if not name:
            raise PermanentItemError("either id or name is required")
        id = connector_pod_name(name)

    pod_name = get_controller(request).request_uninstall(id, connector=name)
    return envelope(UninstalledConnector(pod_name=pod_name))
