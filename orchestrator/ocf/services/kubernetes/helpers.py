"""
Kubernetes Helpers for Connector Pods

This module contains the manifest builder for connector pods, the label
scheme that records ownership on the pod itself, and the read-only
snapshots (ConnectorPod, ControllerPeer) the Pod Store hands out.

Ownership model:
- `servicer` label: name of the controller pod currently responsible
- `adopted_at` label: unix time of the last ownership transfer
- `execution_date` label: unix time after which the pod is garbage collected
- `ocf.io/desired-state` annotation: set to "absent" by a non-owner that
  received an uninstall request; the owner deletes the pod
"""

from dataclasses import dataclass
from typing import Dict, Optional
import time

from kubernetes import client

CONNECTOR_APP = "ocf-connector"

LABEL_APP = "app"
LABEL_SERVICER = "servicer"
LABEL_SERVICER_PORT = "servicer_port"
LABEL_TTL = "ttl"
LABEL_EXECUTION_DATE = "execution_date"
LABEL_ADOPTED_AT = "adopted_at"

ANNOTATION_CONNECTOR = "ocf.io/connector"
ANNOTATION_DESIRED_STATE = "ocf.io/desired-state"

# Waiting reasons that mean the connector will never become healthy on its own
CRASH_REASON = "CrashLoopBackOff"
IMAGE_PULL_REASONS = ("ErrImagePull", "ImagePullBackOff", "InvalidImageName")

TERMINAL_PHASES = ("Failed", "Succeeded")


# =============================================================================
# Labels
# =============================================================================

def get_connector_labels(
    servicer: str,
    ttl_seconds: int,
    servicer_port: int,
    now: Optional[float] = None
) -> Dict[str, str]:
    """
    Get labels for a new connector pod.

    Label values must be strings; unix times are rendered as integers.

    Args:
        servicer: Controller pod name that owns the connector
        ttl_seconds: Keep-alive period
        servicer_port: Port of the owning controller's API
        now: Current unix time (default: time.time())

    Returns:
        Dictionary of labels
    """
    now = time.time() if now is None else now
    return {
        LABEL_APP: CONNECTOR_APP,
        LABEL_SERVICER: servicer,
        LABEL_SERVICER_PORT: str(servicer_port),
        LABEL_TTL: str(ttl_seconds),
        LABEL_EXECUTION_DATE: str(int(now + ttl_seconds)),
    }


def create_connector_pod_manifest(
    pod_name: str,
    connector: str,
    image: str,
    namespace: str,
    labels: Dict[str, str],
    port: int = 8080
) -> client.V1Pod:
    """
    Create the pod manifest for a connector.

    Connectors are never restarted: a crashing connector is deleted and the
    dashboard decides whether to deploy again.

    Args:
        pod_name: Deterministic pod name (see connector_pod_name)
        connector: Raw connector identifier (kept as an annotation)
        image: Image reference
        namespace: Connector namespace
        labels: Ownership labels (see get_connector_labels)
        port: Port the connector serves gRPC on

    Returns:
        V1Pod manifest
    """
    container = client.V1Container(
        name=pod_name,
        image=image,
        image_pull_policy="IfNotPresent",
        env=[client.V1EnvVar(name="PORT", value=str(port))],
        ports=[client.V1ContainerPort(container_port=port, protocol="TCP")],
    )

    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=pod_name,
            namespace=namespace,
            labels=labels,
            annotations={ANNOTATION_CONNECTOR: connector},
        ),
        spec=client.V1PodSpec(
            containers=[container],
            restart_policy="Never",
        ),
    )


def _int_label(labels: Dict[str, str], key: str) -> Optional[int]:
    value = labels.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# =============================================================================
# Snapshots
# =============================================================================

@dataclass(frozen=True)
class ConnectorPod:
    """Read-only snapshot of a connector pod as seen by the Pod Store."""
    name: str
    namespace: str
    resource_version: Optional[str]
    owner: Optional[str]
    phase: Optional[str]
    connector: Optional[str] = None
    image: Optional[str] = None
    pod_ip: Optional[str] = None
    adopted_at: Optional[int] = None
    execution_date: Optional[int] = None
    ttl_seconds: Optional[int] = None
    desired_absent: bool = False
    deletion_requested: bool = False
    running: bool = False
    terminated: bool = False
    crashed: bool = False
    image_pull_failed: bool = False
    restart_count: int = 0
    termination_reason: Optional[str] = None

    @property
    def failure_reason(self) -> Optional[str]:
        """
        Why this connector is considered ill-behaved, or None.

        Checked in order of severity; a restarted container counts as a reboot
        because connectors run with restartPolicy Never.
        """
        if self.crashed:
            return "crashed"
        if self.image_pull_failed:
            return "image_pull_failed"
        if self.terminated or self.phase in TERMINAL_PHASES:
            return "terminated"
        if self.restart_count > 0:
            return "rebooted"
        return None

    def expired(self, now: float) -> bool:
        return self.execution_date is not None and now >= self.execution_date

    @classmethod
    def from_v1(cls, pod: client.V1Pod) -> "ConnectorPod":
        metadata = pod.metadata
        labels = metadata.labels or {}
        annotations = metadata.annotations or {}
        status = pod.status

        running = terminated = crashed = image_pull_failed = False
        restart_count = 0
        termination_reason = None
        statuses = (status.container_statuses if status else None) or []
        for container_status in statuses:
            restart_count += container_status.restart_count or 0
            state = container_status.state
            if state is None:
                continue
            if state.running is not None:
                running = True
            if state.terminated is not None:
                terminated = True
                termination_reason = state.terminated.reason or state.terminated.message
            if state.waiting is not None:
                if state.waiting.reason == CRASH_REASON:
                    crashed = True
                elif state.waiting.reason in IMAGE_PULL_REASONS:
                    image_pull_failed = True

        image = None
        if pod.spec is not None and pod.spec.containers:
            image = pod.spec.containers[0].image

        return cls(
            name=metadata.name,
            namespace=metadata.namespace,
            resource_version=metadata.resource_version,
            owner=labels.get(LABEL_SERVICER) or None,
            phase=status.phase if status else None,
            connector=annotations.get(ANNOTATION_CONNECTOR),
            image=image,
            pod_ip=status.pod_ip if status else None,
            adopted_at=_int_label(labels, LABEL_ADOPTED_AT),
            execution_date=_int_label(labels, LABEL_EXECUTION_DATE),
            ttl_seconds=_int_label(labels, LABEL_TTL),
            desired_absent=annotations.get(ANNOTATION_DESIRED_STATE) == "absent",
            deletion_requested=metadata.deletion_timestamp is not None,
            running=running,
            terminated=terminated,
            crashed=crashed,
            image_pull_failed=image_pull_failed,
            restart_count=restart_count,
            termination_reason=termination_reason,
        )


@dataclass(frozen=True)
class ControllerPeer:
    """A sibling controller instance, discovered from its own pod."""
    name: str
    phase: Optional[str]
    deletion_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @classmethod
    def from_v1(cls, pod: client.V1Pod) -> "ControllerPeer":
        return cls(
            name=pod.metadata.name,
            phase=pod.status.phase if pod.status else None,
            deletion_requested=pod.metadata.deletion_timestamp is not None,
        )
