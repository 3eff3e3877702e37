"""
Registry Manager

Installs and uninstalls connector images in the configured registry backend,
hiding the backend behind one contract.

Install workflow (per image):
1. Derive the target tag from the whole reference and look it up; an
   installed tag is acknowledged as is.
2. Load the image into a throw-away containerd namespace (pull a reference,
   or import an uploaded archive).
3. Tag it as {registry}/{repository}:{target tag}.
4. Push it with the backend's credentials.
5. Remove the staged image and namespace (failures are only logged).

Retry policy:
- Transient errors (timeouts, rate limits, socket not ready) are retried
  with bounded exponential backoff, then surface as RegistryError.
- An authentication failure forces exactly one token refresh and one more
  try; a second rejection is terminal.
- Concurrent installs of the same reference share one in-flight install.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Type

from ...config import get_settings
from ...errors import (
    OcfError,
    PermanentItemError,
    RegistryAuthError,
    RegistryError,
    TagNotFoundError,
    TransientError,
)
from ...schemas import ImageRecord, RegistryToken
from ...utils.resource_naming import image_tag, rfc1035_label, split_reference
from ...utils.retry import retrying
from .base import BaseRegistryBackend
from .ecr import EcrRegistryBackend
from .implementation import RegistryImplementation
from .local import LocalRegistryBackend
from .runtime import RuntimeClient
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

STAGING_NAMESPACE_PREFIX = "ocf-install-"


class RegistryManager:
    """
    Manages connector images across registry backends.

    Registry of available backends lives in `_backends`; the backend is
    selected once from settings.implementation.
    """

    _backends: Dict[RegistryImplementation, Type[BaseRegistryBackend]] = {
        RegistryImplementation.ECR: EcrRegistryBackend,
        RegistryImplementation.MINIKUBE: LocalRegistryBackend,
    }

    def __init__(
        self,
        backend: BaseRegistryBackend,
        runtime: RuntimeClient,
        implementation: RegistryImplementation,
    ):
        self.settings = get_settings()
        self.backend = backend
        self.runtime = runtime
        self.implementation = implementation
        self.tokens = TokenCache(backend.authenticate, self.settings.token_refresh_skew_seconds)

        self._installs: Dict[str, asyncio.Task] = {}

        # Last-known reachability, for health checks
        self.last_reachable: Optional[bool] = None
        self.last_checked_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @classmethod
    def get_backend(cls, implementation: RegistryImplementation, settings) -> BaseRegistryBackend:
        """
        Create the backend for an implementation.

        Raises:
            ConfigurationError: If the backend's settings are incomplete
        """
        backend_class = cls._backends[implementation]
        return backend_class(settings)

    # =========================================================================
    # RETRY / AUTH
    # =========================================================================

    def _mark(self, reachable: bool, error: Optional[Exception] = None) -> None:
        self.last_reachable = reachable
        self.last_checked_at = time.time()
        self.last_error = None if error is None else str(error)

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable]):
        """
        Run an operation under the bounded retry policy.

        Raises:
            RegistryError: If transient failures exhausted every attempt
        """
        try:
            async for attempt in retrying(
                self.settings.registry_retry_attempts,
                self.settings.registry_retry_min_wait,
                self.settings.registry_retry_max_wait,
            ):
                with attempt:
                    result = await operation()
        except TransientError as e:
            self._mark(False, e)
            logger.error(f"[REGISTRY] {description} failed after {self.settings.registry_retry_attempts} attempts: {e}")
            raise RegistryError(f"{description} failed: registry or runtime unavailable") from e

        self._mark(True)
        return result

    async def _token(self) -> Optional[RegistryToken]:
        if not self.implementation.requires_auth:
            return None
        return await self.tokens.get()

    async def _authorized(self, operation: Callable[[Optional[RegistryToken]], Awaitable]):
        """Run an operation with a token; on rejection refresh once and try again."""
        token = await self._token()
        try:
            return await operation(token)
        except RegistryAuthError:
            if not self.implementation.requires_auth:
                raise
            logger.warning("[REGISTRY] Token rejected, refreshing once")
            token = await self.tokens.refresh(stale=token)
            return await operation(token)

    # =========================================================================
    # INSTALL
    # =========================================================================

    def target_tag(self, image: str) -> str:
        """
        Get the registry tag an image reference is (or would be) installed under.

        Bare tags and references into our own repository keep their tag; any
        other reference gets a tag derived from the whole reference.

        Examples:
            >>> manager.target_tag("v1")
            "v1"
            >>> manager.target_tag("registry.kurl/ocf:v1")
            "v1"
            >>> manager.target_tag("repo/foo:v1")
            "repo-foo-v1-<hash>"
        """
        if "/" not in image and ":" not in image:
            return image
        name, tag = split_reference(image)
        if name == self.backend.repository_reference:
            return tag
        return image_tag(image)

    async def install(self, image_reference: str) -> ImageRecord:
        """
        Install an image reference into the registry.

        Idempotent per reference: an image already installed under the
        reference's target tag is returned without pushing, and
        concurrent installs of the same reference share one workflow.

        Args:
            image_reference: Image to install

        Returns:
            ImageRecord of the installed image

        Raises:
            RegistryError: If the registry or runtime stayed unavailable, or
                the registry rejected our credentials twice
        """
        task = self._installs.get(image_reference)
        if task is None:
            task = asyncio.create_task(self._install(image_reference))
            self._installs[image_reference] = task
            task.add_done_callback(lambda _: self._installs.pop(image_reference, None))
        return await asyncio.shield(task)

    async def _install(self, image_reference: str) -> ImageRecord:
        tag = self.target_tag(image_reference)
        target = self.backend.reference_for(tag)

        existing = await self._with_retry("lookup", lambda: self.backend.get_image(tag))
        if existing is not None:
            logger.info(f"[REGISTRY] {target} already installed")
            return existing

        namespace = f"{STAGING_NAMESPACE_PREFIX}{uuid.uuid4().hex[:12]}"
        try:
            await self._with_retry(
                "load",
                lambda: self.runtime.load(reference=image_reference, namespace=namespace),
            )
            if image_reference != target:
                await self._with_retry("tag", lambda: self.runtime.tag(image_reference, target, namespace))
            await self._push(target, namespace)
        finally:
            await self._cleanup(namespace, [image_reference, target])

        record = await self._with_retry("lookup", lambda: self.backend.get_image(tag))
        logger.info(f"[REGISTRY] Installed {target}")
        return record or ImageRecord(tag=tag, reference=target)

    async def install_archive(self, archive_path: str) -> ImageRecord:
        """
        Install the image contained in an uploaded archive under a fresh tag.

        Args:
            archive_path: Path of an OCI/docker image tarball

        Returns:
            ImageRecord with the generated tag

        Raises:
            PermanentItemError: If the archive holds no image
            RegistryError: As for install()
        """
        namespace = f"{STAGING_NAMESPACE_PREFIX}{uuid.uuid4().hex[:12]}"
        staged: List[str] = []
        try:
            images = await self._with_retry(
                "import",
                lambda: self.runtime.load(archive=archive_path, namespace=namespace),
            )
            if not images:
                raise PermanentItemError("archive does not contain an image")

            source = images[0]
            staged.append(source.reference)
            tag = rfc1035_label()
            target = self.backend.reference_for(tag)
            staged.append(target)

            await self._with_retry("tag", lambda: self.runtime.tag(source.reference, target, namespace))
            await self._push(target, namespace)
        finally:
            await self._cleanup(namespace, staged)

        logger.info(f"[REGISTRY] Installed archive as {target}")
        return ImageRecord(tag=tag, digest=source.digest, reference=target)

    async def _push(self, reference: str, namespace: str) -> None:
        async def push(token: Optional[RegistryToken]) -> None:
            await self.runtime.push(reference, self.backend.push_arguments(token), namespace)

        await self._with_retry("push", lambda: self._authorized(push))

    async def _cleanup(self, namespace: str, references: List[str]) -> None:
        """Remove staged images and their namespace. Never raises."""
        for reference in references:
            try:
                await self._with_retry("cleanup", lambda: self.runtime.remove(reference, namespace))
            except OcfError as e:
                logger.warning(f"[REGISTRY] Could not remove staged image {reference}: {e}")
        try:
            await self._with_retry("cleanup", lambda: self.runtime.remove_namespace(namespace))
        except OcfError as e:
            logger.warning(f"[REGISTRY] Could not remove staging namespace {namespace}: {e}")

    # =========================================================================
    # UNINSTALL / QUERY
    # =========================================================================

    async def uninstall(self, image: str) -> bool:
        """
        Delete an image from the registry.

        Idempotent: a missing image is not an error.

        Args:
            image: Image reference or bare tag

        Returns:
            True if an image was deleted, False if there was nothing to delete
        """
        tag = self.target_tag(image)
        deleted = await self._with_retry("delete", lambda: self.backend.delete_image(tag))
        if not deleted:
            logger.info(f"[REGISTRY] {tag} was not installed")
        return deleted

    async def list_images(self) -> List[ImageRecord]:
        return await self._with_retry("list", self.backend.list_images)

    async def get_image(self, tag: str) -> ImageRecord:
        """
        Raises:
            TagNotFoundError: If the tag is not in the registry
        """
        image = await self._with_retry("lookup", lambda: self.backend.get_image(tag))
        if image is None:
            raise TagNotFoundError(tag)
        return image

    async def probe(self) -> bool:
        """Refresh last-known reachability with one cheap lookup."""
        try:
            await self.backend.get_image("latest")
        except TransientError as e:
            self._mark(False, e)
            return False
        except RegistryError as e:
            self._mark(False, e)
            return False
        self._mark(True)
        return True

    def health(self) -> dict:
        age = None if self.last_checked_at is None else time.time() - self.last_checked_at
        return {
            "backend": str(self.implementation),
            "registry": self.backend.repository_reference,
            "reachable": self.last_reachable,
            "seconds_since_check": age,
            "last_error": self.last_error,
        }


# Cached manager instance (singleton pattern)
_registry_manager: Optional[RegistryManager] = None


def create_registry_manager(settings=None) -> RegistryManager:
    """
    Build the Registry Manager for the configured implementation.

    Raises:
        ConfigurationError: If the implementation is unknown or its settings
            are incomplete. Callers treat this as fatal at startup.
    """
    settings = settings or get_settings()
    implementation = RegistryImplementation.from_string(settings.implementation)
    backend = RegistryManager.get_backend(implementation, settings)
    logger.info(f"[REGISTRY] Using {implementation} backend at {backend.repository_reference}")
    return RegistryManager(backend, RuntimeClient(), implementation)


def get_registry_manager() -> RegistryManager:
    global _registry_manager
    if _registry_manager is None:
        _registry_manager = create_registry_manager()
    return _registry_manager


def clear_cache() -> None:
    """Clear the cached manager (useful for testing)."""
    global _registry_manager
    _registry_manager = None
