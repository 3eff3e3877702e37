"""
Kubernetes Module - Connector Pods

This module contains all Kubernetes-specific code of the Connector Manager:
- KubernetesClient: write path (create, conditional patch, preconditioned delete)
- PodStore: watch-fed cache of connector pods and controller peers
- ConnectorPodController: reconciliation loop and peer adoption
- helpers: pod manifest, ownership labels, pod snapshots

Ownership:
1. The `servicer` label names the controller responsible for a pod
2. A controller adopts pods whose servicer has been gone longer than the grace period
3. Every ownership change is a patch preconditioned on the pod's resourceVersion
"""

from .client import KubernetesClient, MutationResult, get_k8s_client
from .controller import ConnectorPodController
from .helpers import (
    ConnectorPod,
    ControllerPeer,
    create_connector_pod_manifest,
    get_connector_labels,
)
from .pod_store import PodStore
