"""
Connector Pod Controller

Level-triggered reconciliation of connector pods, plus the peer adoption
protocol that lets independently deployed controller instances take over
pods orphaned by a crashed or restarted peer. There is no leader election:
ownership is the `servicer` label on each pod and it only changes through
patches preconditioned on the pod's resource version.

Each pass works on one Pod Store snapshot:

1. Peer liveness: a peer is lost once its pod has been missing from the
   store (or terminal) for longer than the adoption grace period.
2. Pods owned by a lost peer, or by nobody, are adopted. Losing the race
   (409) means someone else adopted first; nothing more is done.
3. Owned pods are deleted when marked absent, when their keep-alive ticket
   has expired, or when the connector misbehaves (crash loop, image pull
   failure, terminated or restarted container).
4. Install intents with no pod create one (already-exists is success); any
   existing pod, whoever owns it, satisfies the intent unless it is on its
   way out, in which case the intent waits for the name to free up.
5. Uninstall intents delete owned pods, or mark peer-owned pods absent so
   their owner (or whoever adopts them) deletes them.

Errors are contained per connector: a permanent rejection is recorded for
that connector and the pass moves on; transient errors are retried inside
the Kubernetes client and otherwise left for the next pass.

Usage:
    controller = ConnectorPodController(store, get_k8s_client())
    asyncio.create_task(controller.run())
    deployed = controller.request_install("foo", "registry.kurl/ocf:v1")
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set

import grpc
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from ...config import get_settings
from ...errors import (
    ConflictError,
    FatalError,
    OcfError,
    PermanentItemError,
    PodFailedError,
    PodNotFoundError,
)
from ...schemas import (
    Connector,
    ConnectorAddress,
    DeployedConnector,
    DesiredState,
    KeepAliveTicket,
)
from ...utils.resource_naming import connector_pod_name, pod_dns_name
from .client import KubernetesClient, MutationResult
from .helpers import (
    ANNOTATION_DESIRED_STATE,
    LABEL_ADOPTED_AT,
    LABEL_EXECUTION_DATE,
    LABEL_SERVICER,
    LABEL_SERVICER_PORT,
    ConnectorPod,
    create_connector_pod_manifest,
    get_connector_labels,
)
from .pod_store import PodStore

logger = logging.getLogger(__name__)

# Delay between Pod Store checks while waiting for a pod to start running
WAIT_POLL_SECONDS = 0.5


async def grpc_channel_ready(address: str, timeout: float) -> None:
    """
    Wait until a gRPC channel to address is connected.

    Raises:
        asyncio.TimeoutError: If the channel is not ready within timeout
    """
    async with grpc.aio.insecure_channel(address) as channel:
        await asyncio.wait_for(channel.channel_ready(), timeout=timeout)


class ConnectorPodController:
    """
    Drives connector pods toward the requested state and arbitrates
    ownership between controller peers.
    """

    def __init__(
        self,
        store: PodStore,
        k8s: KubernetesClient,
        identity: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        probe: Callable[[str, float], Awaitable[None]] = grpc_channel_ready,
        on_fatal: Optional[Callable[[Exception], None]] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.k8s = k8s
        self.identity = identity or self.settings.pod_name
        self._clock = clock
        self._probe = probe
        self._on_fatal = on_fatal

        # Pending requests, keyed by pod name. Dropped once the cluster reflects them.
        self._intents: Dict[str, Connector] = {}
        # First time each peer was seen missing or terminal
        self._lost_since: Dict[str, float] = {}
        # Why a pod was deleted by this controller, for waiters
        self._failures: Dict[str, PodFailedError] = {}
        # Last permanent error per pod name
        self.item_errors: Dict[str, OcfError] = {}

        self._wakeup = asyncio.Event()
        self._stopping = False
        self.last_pass_at: Optional[float] = None
        self.fatal_error: Optional[Exception] = None

        logger.info(f"[CONTROLLER] Initialized as {self.identity}")

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def request_install(
        self,
        name: str,
        image: str,
        ttl_seconds: Optional[int] = None
    ) -> DeployedConnector:
        """
        Record that connector `name` should run `image`.

        Args:
            name: Connector identifier
            image: Image reference
            ttl_seconds: Keep-alive period (default: settings.default_ttl_seconds)

        Returns:
            DeployedConnector with the deterministic pod name

        Raises:
            PermanentItemError: If the identifier or TTL is invalid
        """
        try:
            pod_name = connector_pod_name(name)
        except ValueError as e:
            raise PermanentItemError(str(e)) from e

        ttl = self.settings.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise PermanentItemError(f"ttl must be positive, got {ttl}")

        self._intents[pod_name] = Connector(
            name=name,
            image=image,
            desired_state=DesiredState.PRESENT,
            namespace=self.settings.connector_namespace,
            ttl_seconds=ttl,
        )
        self._failures.pop(pod_name, None)
        self.item_errors.pop(pod_name, None)
        self.kick()

        logger.info(f"[CONTROLLER] Install requested: {name} -> {pod_name} ({image})")
        return DeployedConnector(connector=name, pod_name=pod_name, image=image, ttl_seconds=ttl)

    def request_uninstall(self, pod_name: str, connector: Optional[str] = None) -> str:
        """
        Record that the connector running as `pod_name` should be removed.

        Idempotent: uninstalling a connector without a pod is a no-op.

        Returns:
            The pod name
        """
        self._intents[pod_name] = Connector(
            name=connector or pod_name,
            desired_state=DesiredState.ABSENT,
            namespace=self.settings.connector_namespace,
            ttl_seconds=self.settings.default_ttl_seconds,
        )
        self.kick()

        logger.info(f"[CONTROLLER] Uninstall requested: {pod_name}")
        return pod_name

    def kick(self) -> None:
        """Wake the reconciliation loop."""
        self._wakeup.set()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def run(self) -> None:
        """Run reconciliation passes until stopped. Passes never overlap."""
        await self.store.wait_until_synced()
        logger.info("[CONTROLLER] Pod Store synced, starting reconciliation")

        while not self._stopping:
            try:
                await self.reconcile_once()
            except FatalError as e:
                self.fatal_error = e
                logger.critical(f"[CONTROLLER] {e}")
                if self._on_fatal is not None:
                    self._on_fatal(e)
                return
            except Exception as e:
                logger.error(f"[CONTROLLER] Reconciliation pass failed: {e}", exc_info=True)

            await self._wait_for_work()

    def stop(self) -> None:
        self._stopping = True
        self.kick()

    async def _wait_for_work(self) -> None:
        """Wait for a store change, a request or the resync tick, then reset the triggers."""
        waiters = [
            asyncio.create_task(self.store.changed.wait()),
            asyncio.create_task(self._wakeup.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.settings.resync_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        # Events set during the next pass trigger the one after it
        self.store.changed.clear()
        self._wakeup.clear()

    async def reconcile_once(self) -> None:
        """Run one complete pass over the current Pod Store snapshot."""
        if not self.store.synced:
            logger.debug("[CONTROLLER] Pod Store not synced yet, skipping pass")
            return

        now = self._clock()
        pods = {pod.name: pod for pod in self.store.list_connector_pods()}
        lost = self._update_peer_liveness(pods, now)

        for pod in pods.values():
            await self._guard(pod.name, self._reconcile_pod(pod, lost, now))

        for pod_name, intent in list(self._intents.items()):
            await self._guard(pod_name, self._reconcile_intent(pod_name, intent, pods.get(pod_name), now))

        self.last_pass_at = now

    async def _guard(self, pod_name: str, operation: Awaitable) -> None:
        """Contain errors to one connector so the rest of the pass proceeds."""
        try:
            await operation
        except FatalError:
            raise
        except PermanentItemError as e:
            self.item_errors[pod_name] = e
            logger.error(f"[CONTROLLER] {pod_name}: {e}")
        except OcfError as e:
            logger.warning(f"[CONTROLLER] {pod_name}: {e}; will retry next pass")
        except Exception as e:
            logger.error(f"[CONTROLLER] {pod_name}: unexpected error: {e}", exc_info=True)

    def _update_peer_liveness(self, pods: Dict[str, ConnectorPod], now: float) -> Set[str]:
        """
        Get the owners whose liveness has been lost for longer than the grace period.

        A peer is live while its pod exists in the system namespace and is not
        in a terminal phase.
        """
        owners = {pod.owner for pod in pods.values() if pod.owner and pod.owner != self.identity}
        grace = self.settings.adoption_grace_seconds
        lost = set()

        for owner in owners:
            peer = self.store.get_peer(owner)
            if peer is not None and not peer.terminal:
                self._lost_since.pop(owner, None)
                continue

            since = self._lost_since.setdefault(owner, now)
            if now - since >= grace:
                lost.add(owner)

        for owner in list(self._lost_since):
            if owner not in owners:
                del self._lost_since[owner]

        return lost

    async def _reconcile_pod(self, pod: ConnectorPod, lost: Set[str], now: float) -> None:
        if pod.deletion_requested:
            return

        if pod.owner != self.identity:
            if pod.owner is None or pod.owner in lost:
                await self._adopt(pod, now)
            return

        # Waiters of a pending redeploy wait for the replacement instead
        replacing = self._install_pending(pod.name)

        if pod.desired_absent:
            await self._delete(pod, "uninstalled")
        elif pod.expired(now):
            logger.info(f"[GC] Keep-alive ticket for {pod.name} expired")
            if not replacing:
                self._failures[pod.name] = PodFailedError(pod.name, "deleted", "keep-alive ticket expired")
            await self._delete(pod, "expired")
        elif pod.failure_reason:
            reason = pod.failure_reason
            if not replacing:
                self._failures[pod.name] = PodFailedError(pod.name, reason, pod.termination_reason or "")
            await self._delete(pod, reason)

    def _install_pending(self, pod_name: str) -> bool:
        intent = self._intents.get(pod_name)
        return intent is not None and intent.desired_state == DesiredState.PRESENT

    @staticmethod
    def _outgoing(pod: ConnectorPod, now: float) -> bool:
        """Whether a pod is terminating or about to be deleted by its owner."""
        return bool(
            pod.deletion_requested
            or pod.desired_absent
            or pod.expired(now)
            or pod.failure_reason
        )

    async def _adopt(self, pod: ConnectorPod, now: float) -> None:
        labels = {
            LABEL_SERVICER: self.identity,
            LABEL_SERVICER_PORT: str(self.settings.port),
            LABEL_ADOPTED_AT: str(int(now)),
        }
        result = await self.k8s.patch_pod(pod.name, pod.resource_version, labels=labels)

        if result == MutationResult.APPLIED:
            logger.info(f"[CONTROLLER] Adopted {pod.name} from {pod.owner or 'no owner'}")
        elif result == MutationResult.CONFLICT:
            logger.info(f"[CONTROLLER] {pod.name} changed before adoption, leaving it")
        else:
            logger.debug(f"[CONTROLLER] {pod.name} disappeared before adoption")

    async def _delete(self, pod: ConnectorPod, reason: str) -> None:
        result = await self.k8s.delete_pod(pod.name, pod.resource_version)
        if result == MutationResult.APPLIED:
            logger.info(f"[CONTROLLER] Deleted {pod.name} ({reason})")

    async def _reconcile_intent(
        self,
        pod_name: str,
        intent: Connector,
        pod: Optional[ConnectorPod],
        now: float
    ) -> None:
        if intent.desired_state == DesiredState.PRESENT:
            await self._converge_present(pod_name, intent, pod, now)
        else:
            await self._converge_absent(pod_name, pod)

    async def _converge_present(
        self,
        pod_name: str,
        intent: Connector,
        pod: Optional[ConnectorPod],
        now: float
    ) -> None:
        if pod is not None:
            # An outgoing pod still holds the name; create once it is gone
            if not self._outgoing(pod, now):
                self._intents.pop(pod_name, None)
            return

        labels = get_connector_labels(
            servicer=self.identity,
            ttl_seconds=intent.ttl_seconds,
            servicer_port=self.settings.port,
            now=now,
        )
        manifest = create_connector_pod_manifest(
            pod_name=pod_name,
            connector=intent.name,
            image=intent.image,
            namespace=intent.namespace,
            labels=labels,
            port=self.settings.connector_port,
        )

        try:
            await self.k8s.create_pod(manifest)
        except PermanentItemError:
            self._intents.pop(pod_name, None)
            raise
        # Created or already existing: the pod is now the record
        self._intents.pop(pod_name, None)

    async def _converge_absent(self, pod_name: str, pod: Optional[ConnectorPod]) -> None:
        if pod is None or pod.deletion_requested:
            self._intents.pop(pod_name, None)
            return

        if pod.owner == self.identity:
            result = await self.k8s.delete_pod(pod.name, pod.resource_version)
        elif pod.desired_absent:
            result = MutationResult.APPLIED
        else:
            # Only the owner deletes; leave the request on the pod itself
            result = await self.k8s.patch_pod(
                pod.name,
                pod.resource_version,
                annotations={ANNOTATION_DESIRED_STATE: "absent"},
            )
            if result == MutationResult.APPLIED:
                logger.info(f"[CONTROLLER] Marked {pod.name} absent for owner {pod.owner}")

        # CONFLICT keeps the intent for the next pass, with a fresher version
        if result != MutationResult.CONFLICT:
            self._intents.pop(pod_name, None)

    # =========================================================================
    # WAIT / KEEP-ALIVE
    # =========================================================================

    async def wait_ready(self, pod_name: str) -> ConnectorAddress:
        """
        Wait until a connector is running and its gRPC endpoint accepts connections.

        Args:
            pod_name: Connector pod name

        Returns:
            ConnectorAddress with host:port

        Raises:
            PodNotFoundError: If no such pod exists or is pending creation
            PodFailedError: If the pod crashed, failed to pull its image, was
                deleted, did not start within the start timeout, or never
                answered within the readiness timeout
        """
        try:
            pod = await asyncio.wait_for(
                self._wait_running(pod_name),
                timeout=self.settings.start_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PodFailedError(
                pod_name,
                "unresponsive",
                f"not running after {self.settings.start_timeout_seconds}s",
            ) from e

        address = f"{pod_dns_name(pod.pod_ip, pod.namespace)}:{self.settings.connector_port}"

        timeout = self.settings.readiness_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_exponential(multiplier=0.1, max=timeout),
                retry=retry_if_exception_type((asyncio.TimeoutError, grpc.RpcError, OSError)),
                reraise=True,
            ):
                with attempt:
                    await self._probe(address, timeout)
        except (asyncio.TimeoutError, grpc.RpcError, OSError) as e:
            raise PodFailedError(pod_name, "unresponsive", str(e) or "health check timed out") from e

        logger.info(f"[CONTROLLER] {pod_name} ready at {address}")
        return ConnectorAddress(pod_name=pod_name, address=address)

    async def _wait_running(self, pod_name: str) -> ConnectorPod:
        seen = False
        while True:
            failure = self._failures.get(pod_name)
            if failure is not None:
                raise failure

            pod = self.store.get_connector_pod(pod_name)
            pending = self._install_pending(pod_name)
            if pod is None:
                if not pending:
                    if seen:
                        raise PodFailedError(pod_name, "deleted")
                    if pod_name not in self._intents:
                        raise PodNotFoundError(f"connector pod {pod_name} not found")
            elif pending and self._outgoing(pod, self._clock()):
                # Old pod of a redeploy; wait for its replacement
                pass
            else:
                seen = True
                if pod.failure_reason:
                    raise PodFailedError(pod_name, pod.failure_reason, pod.termination_reason or "")
                if pod.deletion_requested:
                    raise PodFailedError(pod_name, "deleted")
                if pod.running and pod.pod_ip:
                    return pod

            await asyncio.sleep(WAIT_POLL_SECONDS)

    async def refresh(self, pod_name: str) -> KeepAliveTicket:
        """
        Push back the garbage collection deadline of a connector.

        Raises:
            PodNotFoundError: If the pod does not exist
            ConflictError: If the pod kept changing under every attempt
        """
        for _ in range(self.settings.api_retry_attempts):
            pod = self.store.get_connector_pod(pod_name)
            if pod is None or pod.deletion_requested:
                raise PodNotFoundError(f"connector pod {pod_name} not found")

            ttl = pod.ttl_seconds or self.settings.default_ttl_seconds
            ticket = KeepAliveTicket(ticket=pod_name, execution_date=int(self._clock() + ttl))
            result = await self.k8s.patch_pod(
                pod_name,
                pod.resource_version,
                labels={LABEL_EXECUTION_DATE: str(ticket.execution_date)},
            )
            if result == MutationResult.APPLIED:
                logger.debug(f"[GC] Refreshed {pod_name} until {ticket.execution_date}")
                return ticket
            if result == MutationResult.ALREADY_DELETED:
                raise PodNotFoundError(f"connector pod {pod_name} not found")

            # Cache is behind the server; give the watch a moment
            await asyncio.sleep(WAIT_POLL_SECONDS)

        raise ConflictError(f"connector pod {pod_name} changed during refresh")

    # =========================================================================
    # HEALTH
    # =========================================================================

    def health(self) -> dict:
        now = self._clock()
        age = None if self.last_pass_at is None else now - self.last_pass_at
        alive = (
            self.fatal_error is None
            and age is not None
            and age <= 3 * self.settings.resync_interval_seconds
        )
        owned = [p for p in self.store.list_connector_pods() if p.owner == self.identity]
        return {
            "alive": alive,
            "identity": self.identity,
            "synced": self.store.synced,
            "seconds_since_last_pass": age,
            "owned_pods": len(owned),
            "pending_requests": len(self._intents),
        }
