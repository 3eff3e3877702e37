"""
Local development registry backend.

Talks to a plain-HTTP Docker Registry v2 (the minikube registry addon, or
any `registry:2` container) at a fixed address. No authentication.

The registry API has no delete-by-tag: a tag is deleted by resolving its
manifest digest first and deleting the manifest by digest.
"""

import hashlib
import logging
from typing import List, Optional

import httpx

from ...errors import RegistryAuthError, RegistryError, RegistryUnavailableError
from ...schemas import ImageRecord, RegistryToken
from .base import BaseRegistryBackend

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"


class LocalRegistryBackend(BaseRegistryBackend):
    """Registry backend for a local, unauthenticated registry."""

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        super().__init__(settings.registry, settings.repository)
        self.base_url = f"http://{self.registry}/v2/{self.repository}"
        self.timeout = settings.registry_request_timeout
        self._transport = transport

        logger.info(f"[LOCAL-REGISTRY] Using {self.base_url}")

    def validate_settings(self) -> None:
        # Registry and repository have defaults; nothing else is needed
        pass

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request and map failures onto the error taxonomy.

        404 is returned to the caller; every other non-2xx status raises.
        """
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RegistryUnavailableError(f"registry {self.registry} unreachable: {e}") from e

        if response.status_code == 404 or response.is_success:
            return response

        message = f"{method} {url} returned {response.status_code}"
        if response.status_code in (401, 403):
            raise RegistryAuthError(message)
        if response.status_code == 429 or response.status_code >= 500:
            raise RegistryUnavailableError(message)
        raise RegistryError(message)

    async def authenticate(self) -> Optional[RegistryToken]:
        return None

    def push_arguments(self, token: Optional[RegistryToken]) -> List[str]:
        return ["--plain-http"]

    async def list_images(self) -> List[ImageRecord]:
        response = await self._request("GET", "/tags/list")
        if response.status_code == 404:
            return []

        tags = response.json().get("tags") or []
        images = []
        for tag in tags:
            image = await self.get_image(tag)
            if image is not None:
                images.append(image)
        return images

    async def get_image(self, tag: str) -> Optional[ImageRecord]:
        response = await self._request(
            "GET",
            f"/manifests/{tag}",
            headers={"Accept": f"{MANIFEST_V2}, {OCI_MANIFEST}"},
        )
        if response.status_code == 404:
            return None

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            digest = f"sha256:{hashlib.sha256(response.content).hexdigest()}"
        return ImageRecord(tag=tag, digest=digest, reference=self.reference_for(tag))

    async def delete_image(self, tag: str) -> bool:
        image = await self.get_image(tag)
        if image is None:
            logger.debug(f"[LOCAL-REGISTRY] {tag} already absent")
            return False

        response = await self._request("DELETE", f"/manifests/{image.digest}")
        if response.status_code == 404:
            return False

        logger.info(f"[LOCAL-REGISTRY] Deleted {image.reference} ({image.digest})")
        return True
