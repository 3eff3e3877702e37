"""
In-memory stand-ins for the cluster used by controller tests.

FakeCluster behaves like the API server for the calls the controller makes:
names are unique, every write bumps the resource version, and patches and
deletes carrying a stale resource version are rejected as conflicts.
"""

import asyncio
import dataclasses
from typing import Dict, List, Optional

import pytest

pytest.importorskip("kubernetes")

from kubernetes import client

from ocf.services.kubernetes.client import MutationResult
from ocf.services.kubernetes.helpers import (
    ANNOTATION_DESIRED_STATE,
    LABEL_ADOPTED_AT,
    LABEL_EXECUTION_DATE,
    LABEL_SERVICER,
    ConnectorPod,
    ControllerPeer,
)


class FakeCluster:
    def __init__(self):
        self.pods: Dict[str, ConnectorPod] = {}
        self.peers: Dict[str, ControllerPeer] = {}
        self._version = 0
        self.calls: List[tuple] = []
        # Exceptions raised by the next calls, in order
        self.failures: List[Exception] = []

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def add_pod(self, name: str, owner: Optional[str], **fields) -> ConnectorPod:
        pod = ConnectorPod(
            name=name,
            namespace="ocf",
            resource_version=self._next_version(),
            owner=owner,
            phase=fields.pop("phase", "Running"),
            **fields,
        )
        self.pods[name] = pod
        return pod

    def add_peer(self, name: str, phase: str = "Running") -> None:
        self.peers[name] = ControllerPeer(name=name, phase=phase)

    async def create_pod(self, manifest: client.V1Pod) -> MutationResult:
        self.calls.append(("create", manifest.metadata.name))
        self._maybe_fail()
        name = manifest.metadata.name
        if name in self.pods:
            return MutationResult.ALREADY_EXISTS
        manifest.metadata.resource_version = self._next_version()
        manifest.status = client.V1PodStatus(phase="Pending")
        self.pods[name] = ConnectorPod.from_v1(manifest)
        return MutationResult.APPLIED

    async def patch_pod(self, name, resource_version, labels=None, annotations=None) -> MutationResult:
        self.calls.append(("patch", name))
        self._maybe_fail()
        pod = self.pods.get(name)
        if pod is None:
            return MutationResult.ALREADY_DELETED
        if pod.resource_version != resource_version:
            return MutationResult.CONFLICT

        changes = {"resource_version": self._next_version()}
        labels = labels or {}
        annotations = annotations or {}
        if LABEL_SERVICER in labels:
            changes["owner"] = labels[LABEL_SERVICER]
        if LABEL_ADOPTED_AT in labels:
            changes["adopted_at"] = int(labels[LABEL_ADOPTED_AT])
        if LABEL_EXECUTION_DATE in labels:
            changes["execution_date"] = int(labels[LABEL_EXECUTION_DATE])
        if annotations.get(ANNOTATION_DESIRED_STATE) == "absent":
            changes["desired_absent"] = True
        self.pods[name] = dataclasses.replace(pod, **changes)
        return MutationResult.APPLIED

    async def delete_pod(self, name, resource_version=None) -> MutationResult:
        self.calls.append(("delete", name))
        self._maybe_fail()
        pod = self.pods.get(name)
        if pod is None:
            return MutationResult.ALREADY_DELETED
        if resource_version and pod.resource_version != resource_version:
            return MutationResult.CONFLICT
        del self.pods[name]
        return MutationResult.APPLIED

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


class FakeStore:
    """
    Pod Store over a FakeCluster.

    Live by default; freeze() pins the current snapshot to model a
    controller whose watch has not caught up yet.
    """

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.synced = True
        self.changed = asyncio.Event()
        self._frozen_pods: Optional[Dict[str, ConnectorPod]] = None

    def freeze(self) -> "FakeStore":
        self._frozen_pods = dict(self.cluster.pods)
        return self

    def _pods(self) -> Dict[str, ConnectorPod]:
        return self._frozen_pods if self._frozen_pods is not None else self.cluster.pods

    def list_connector_pods(self):
        return list(self._pods().values())

    def get_connector_pod(self, name):
        return self._pods().get(name)

    def list_peers(self):
        return list(self.cluster.peers.values())

    def get_peer(self, name):
        return self.cluster.peers.get(name)

    async def wait_until_synced(self):
        return None


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_controller(cluster, clock):
    """Factory for controllers sharing one cluster."""
    from ocf.services.kubernetes.controller import ConnectorPodController

    def _make(identity: str, store: Optional[FakeStore] = None, **kwargs):
        cluster.add_peer(identity)
        return ConnectorPodController(
            store or FakeStore(cluster),
            cluster,
            identity=identity,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_store_factory(cluster):
    return lambda: FakeStore(cluster)


@pytest.fixture
def make_v1_pod():
    """Factory for V1Pod objects as the watch would deliver them."""

    def _make(
        name: str = "foo-2c26b46b",
        namespace: str = "ocf",
        labels: Optional[dict] = None,
        annotations: Optional[dict] = None,
        phase: str = "Running",
        resource_version: str = "1",
        pod_ip: Optional[str] = "10.0.0.5",
        container_state: Optional[client.V1ContainerState] = None,
        restart_count: int = 0,
        deletion_timestamp=None,
    ) -> client.V1Pod:
        statuses = None
        if container_state is not None:
            statuses = [
                client.V1ContainerStatus(
                    name=name,
                    image="registry.kurl/ocf:v1",
                    image_id="",
                    ready=container_state.running is not None,
                    restart_count=restart_count,
                    state=container_state,
                )
            ]
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels if labels is not None else {"app": "ocf-connector", "servicer": "acm-self"},
                annotations=annotations,
                resource_version=resource_version,
                deletion_timestamp=deletion_timestamp,
            ),
            spec=client.V1PodSpec(
                containers=[client.V1Container(name=name, image="registry.kurl/ocf:v1")]
            ),
            status=client.V1PodStatus(phase=phase, pod_ip=pod_ip, container_statuses=statuses),
        )

    return _make
