"""
Kubernetes Client for Connector Pods

This module provides the write path to the Kubernetes API used by the
Connector Pod Controller: create, conditional patch and preconditioned
delete of connector pods. Reads go through the Pod Store, never through
this client.

Every mutation is safe under concurrent controllers:
- create: name uniqueness arbitrates; already-exists is reported, not raised
- patch: carries metadata.resourceVersion, so a stale view is rejected (409)
- delete: preconditioned on the resource version we observed; 404 is success
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError
import logging
import asyncio
from enum import Enum
from typing import Dict, Optional

from ...config import get_settings
from ...errors import (
    ConflictError,
    KubernetesUnavailableError,
    NotFoundError,
    classify_api_exception,
)
from ...utils.retry import retrying

logger = logging.getLogger(__name__)


class MutationResult(str, Enum):
    """Outcome of a mutation that did not fail."""
    APPLIED = "applied"
    ALREADY_EXISTS = "already_exists"
    ALREADY_DELETED = "already_deleted"
    CONFLICT = "conflict"


def load_kube_config() -> None:
    """
    Load in-cluster config, falling back to kubeconfig for development.

    Raises:
        RuntimeError: If neither configuration can be loaded
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.info("Loaded kubeconfig for development")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes config: {e}")
            raise RuntimeError("Cannot load Kubernetes configuration") from e


class KubernetesClient:
    """
    Manages connector pods through the Kubernetes API.

    Transient API failures are retried with bounded exponential backoff;
    conflicts come back as a MutationResult; anything else is raised as an
    OcfError from the taxonomy.
    """

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None):
        self.settings = get_settings()

        if core_v1 is None:
            load_kube_config()
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1

        self.namespace = self.settings.connector_namespace
        self.system_namespace = self.settings.system_namespace

        logger.info(
            f"[K8S] Client initialized - connectors: {self.namespace}, "
            f"controllers: {self.system_namespace}"
        )

    async def _call(self, description: str, func, **kwargs):
        """
        Run a blocking API call in a thread with the shared retry policy.

        ApiExceptions that survive the retries are converted to OcfError.
        """
        try:
            async for attempt in retrying(
                self.settings.api_retry_attempts,
                self.settings.api_retry_min_wait,
                self.settings.api_retry_max_wait,
            ):
                with attempt:
                    return await asyncio.to_thread(func, **kwargs)
        except ApiException as e:
            raise classify_api_exception(e, description) from e
        except Urllib3HTTPError as e:
            raise KubernetesUnavailableError(f"{description}: {e}") from e

    # =========================================================================
    # POD MUTATIONS
    # =========================================================================

    async def create_pod(self, manifest: client.V1Pod) -> MutationResult:
        """
        Create a connector pod.

        Args:
            manifest: Pod manifest (see create_connector_pod_manifest)

        Returns:
            APPLIED, or ALREADY_EXISTS when another controller won the race
        """
        name = manifest.metadata.name
        try:
            await self._call(
                f"create pod {name}",
                self.core_v1.create_namespaced_pod,
                namespace=self.namespace,
                body=manifest,
            )
        except ConflictError:
            logger.info(f"[K8S] Pod {name} already exists")
            return MutationResult.ALREADY_EXISTS

        logger.info(f"[K8S] Created pod {name} ({manifest.spec.containers[0].image})")
        return MutationResult.APPLIED

    async def patch_pod(
        self,
        name: str,
        resource_version: str,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> MutationResult:
        """
        Patch labels/annotations of a pod, conditioned on its resource version.

        Args:
            name: Pod name
            resource_version: Version the caller based its decision on
            labels: Labels to set
            annotations: Annotations to set

        Returns:
            APPLIED, CONFLICT if the pod changed since resource_version, or
            ALREADY_DELETED if it no longer exists
        """
        metadata = {"resourceVersion": resource_version}
        if labels:
            metadata["labels"] = labels
        if annotations:
            metadata["annotations"] = annotations

        try:
            await self._call(
                f"patch pod {name}",
                self.core_v1.patch_namespaced_pod,
                name=name,
                namespace=self.namespace,
                body={"metadata": metadata},
            )
        except ConflictError:
            logger.debug(f"[K8S] Patch of pod {name} rejected at resourceVersion {resource_version}")
            return MutationResult.CONFLICT
        except NotFoundError:
            return MutationResult.ALREADY_DELETED

        return MutationResult.APPLIED

    async def delete_pod(
        self,
        name: str,
        resource_version: Optional[str] = None,
    ) -> MutationResult:
        """
        Delete a connector pod.

        Args:
            name: Pod name
            resource_version: If given, only delete that exact version

        Returns:
            APPLIED, ALREADY_DELETED, or CONFLICT if the pod changed
        """
        preconditions = None
        if resource_version:
            preconditions = client.V1Preconditions(resource_version=resource_version)

        try:
            await self._call(
                f"delete pod {name}",
                self.core_v1.delete_namespaced_pod,
                name=name,
                namespace=self.namespace,
                body=client.V1DeleteOptions(
                    grace_period_seconds=self.settings.delete_grace_period_seconds,
                    preconditions=preconditions,
                ),
            )
        except NotFoundError:
            logger.debug(f"[K8S] Pod {name} already deleted")
            return MutationResult.ALREADY_DELETED
        except ConflictError:
            logger.debug(f"[K8S] Pod {name} changed before delete")
            return MutationResult.CONFLICT

        logger.info(f"[K8S] Deleted pod {name}")
        return MutationResult.APPLIED


# Global instance
_k8s_client = None


def get_k8s_client() -> KubernetesClient:
    """Get the global Kubernetes client instance."""
    global _k8s_client
    if _k8s_client is None:
        _k8s_client = KubernetesClient()
    return _k8s_client
