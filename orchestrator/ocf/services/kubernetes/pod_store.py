"""
Pod Store: watch-fed cache of connector pods and controller peers

The store keeps two snapshots, each fed by its own list-then-watch unit:

- connector pods in the connector namespace (`ocf`)
- controller peer pods in the system namespace (`ocf-system`, app=acm)

Architecture:
- Each watch unit runs the blocking kubernetes watch in a worker thread and
  is the only writer of its snapshot. Writes build a new dict and swap the
  reference, so readers never block and never see a half-applied event.
- When the stream ends (server-side timeout, dropped connection) the unit
  resumes from the last resource version it saw.
- 410 Gone (history compacted) triggers a full list-and-reset.
- Transport errors back off exponentially with jitter, forever.
- 401/403 is fatal: on_fatal is called and the unit stops. A controller must
  not keep running on a view of the world that can no longer change.

Usage:
    store = PodStore()
    store.start()
    await store.wait_until_synced()
    pods = store.list_connector_pods()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    wait_random_exponential,
)

from ...config import get_settings
from ...errors import WatchAuthorizationError
from ...utils.retry import is_retryable_error
from .client import load_kube_config
from .helpers import CONNECTOR_APP, ConnectorPod, ControllerPeer

logger = logging.getLogger(__name__)

HTTP_GONE = 410


class ResourceExpired(Exception):
    """The resource version we resumed from has been compacted away."""
    pass


@dataclass
class WatchSource:
    key: str
    namespace: str
    label_selector: Optional[str]
    converter: Callable


class PodStore:
    """
    Eventually-consistent, read-only view of connector pods and controller peers.

    All list/get methods are served from memory and never touch the network.
    """

    def __init__(
        self,
        core_v1: Optional[client.CoreV1Api] = None,
        on_fatal: Optional[Callable[[Exception], None]] = None,
    ):
        self.settings = get_settings()

        if core_v1 is None:
            load_kube_config()
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1
        self._on_fatal = on_fatal

        self.sources = [
            WatchSource(
                key="connectors",
                namespace=self.settings.connector_namespace,
                label_selector=f"app={CONNECTOR_APP}",
                converter=ConnectorPod.from_v1,
            ),
            WatchSource(
                key="peers",
                namespace=self.settings.system_namespace,
                label_selector=f"app={self.settings.controller_app_label}",
                converter=ControllerPeer.from_v1,
            ),
        ]

        self._snapshots: Dict[str, Dict[str, object]] = {s.key: {} for s in self.sources}
        self._resource_versions: Dict[str, Optional[str]] = {s.key: None for s in self.sources}
        self._synced: Dict[str, asyncio.Event] = {s.key: asyncio.Event() for s in self.sources}
        self._watches: Dict[str, watch.Watch] = {}
        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

        # Set whenever a snapshot changes; the controller clears it
        self.changed = asyncio.Event()
        self.fatal_error: Optional[Exception] = None

    # =========================================================================
    # READ PATH
    # =========================================================================

    def list_connector_pods(self) -> List[ConnectorPod]:
        return list(self._snapshots["connectors"].values())

    def get_connector_pod(self, name: str) -> Optional[ConnectorPod]:
        return self._snapshots["connectors"].get(name)

    def list_peers(self) -> List[ControllerPeer]:
        return list(self._snapshots["peers"].values())

    def get_peer(self, name: str) -> Optional[ControllerPeer]:
        return self._snapshots["peers"].get(name)

    @property
    def synced(self) -> bool:
        return all(event.is_set() for event in self._synced.values())

    async def wait_until_synced(self) -> None:
        """Wait until every source has completed its first list."""
        await asyncio.gather(*(event.wait() for event in self._synced.values()))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start one watch unit per source on the running event loop."""
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        for source in self.sources:
            task = asyncio.create_task(self._supervise(source), name=f"pod-store-{source.key}")
            self._tasks.append(task)
        logger.info("[STORE] Started watch units")

    async def stop(self) -> None:
        self._stopping = True
        for w in self._watches.values():
            w.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[STORE] Stopped watch units")

    async def _supervise(self, source: WatchSource) -> None:
        try:
            await self._run_source(source)
        except WatchAuthorizationError as e:
            self.fatal_error = e
            logger.critical(f"[STORE] {e}")
            if self._on_fatal is not None:
                self._on_fatal(e)

    async def _run_source(self, source: WatchSource) -> None:
        """
        List, then watch from the last resource version until stopped.

        A fresh AsyncRetrying per cycle resets the backoff after every
        healthy stream.
        """
        while not self._stopping:
            try:
                async for attempt in AsyncRetrying(
                    wait=wait_random_exponential(multiplier=0.5, max=self.settings.watch_backoff_max_seconds),
                    retry=retry_if_exception(is_retryable_error),
                    before_sleep=before_sleep_log(logger, logging.WARNING),
                    reraise=True,
                ):
                    with attempt:
                        if self._resource_versions[source.key] is None:
                            await asyncio.to_thread(self._list, source)
                            self._mark_synced(source)
                        await asyncio.to_thread(self._watch, source)
            except ResourceExpired:
                logger.info(f"[STORE] {source.key}: resource version expired, relisting")
                self._resource_versions[source.key] = None
            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.info(f"[STORE] {source.key}: resource version expired, relisting")
                    self._resource_versions[source.key] = None
                elif e.status in (401, 403):
                    raise WatchAuthorizationError(
                        f"watch on {source.namespace} lost authorization: {e.status} {e.reason}"
                    ) from e
                else:
                    logger.error(f"[STORE] {source.key}: watch failed with {e.status} {e.reason}, relisting")
                    self._resource_versions[source.key] = None
                    await asyncio.sleep(self.settings.watch_backoff_max_seconds)
            except Exception as e:
                logger.error(f"[STORE] {source.key}: unexpected watch error: {e}", exc_info=True)
                self._resource_versions[source.key] = None
                await asyncio.sleep(self.settings.watch_backoff_max_seconds)

    def _mark_synced(self, source: WatchSource) -> None:
        event = self._synced[source.key]
        if not event.is_set():
            logger.info(f"[STORE] {source.key}: initial list complete")
            event.set()

    # =========================================================================
    # WATCH UNIT (runs in a worker thread)
    # =========================================================================

    def _list(self, source: WatchSource) -> None:
        """Replace the snapshot with a full list of the source."""
        kwargs = {"namespace": source.namespace}
        if source.label_selector:
            kwargs["label_selector"] = source.label_selector
        response = self.core_v1.list_namespaced_pod(**kwargs)

        snapshot = {}
        for pod in response.items:
            snapshot[pod.metadata.name] = source.converter(pod)

        self._snapshots[source.key] = snapshot
        self._resource_versions[source.key] = response.metadata.resource_version
        logger.debug(f"[STORE] {source.key}: listed {len(snapshot)} pods at {response.metadata.resource_version}")
        self._notify()

    def _watch(self, source: WatchSource) -> None:
        """Consume one watch stream until it ends."""
        w = watch.Watch()
        self._watches[source.key] = w

        kwargs = {
            "namespace": source.namespace,
            "resource_version": self._resource_versions[source.key],
            "timeout_seconds": self.settings.watch_timeout_seconds,
            "allow_watch_bookmarks": True,
        }
        if source.label_selector:
            kwargs["label_selector"] = source.label_selector

        try:
            for event in w.stream(self.core_v1.list_namespaced_pod, **kwargs):
                if self._stopping:
                    break
                self._handle_event(source, event)
        finally:
            w.stop()
            self._watches.pop(source.key, None)

    def _handle_event(self, source: WatchSource, event: dict) -> None:
        event_type = event.get("type")

        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            code = raw.get("code")
            if code == HTTP_GONE:
                raise ResourceExpired(raw.get("message", ""))
            raise ApiException(status=code, reason=raw.get("message"))

        pod = event["object"]
        self._resource_versions[source.key] = pod.metadata.resource_version
        if event_type == "BOOKMARK":
            return

        self._apply(source, event_type, pod)

    def _apply(self, source: WatchSource, event_type: str, pod: client.V1Pod) -> None:
        """Copy-on-write update of one snapshot entry."""
        snapshot = dict(self._snapshots[source.key])
        name = pod.metadata.name
        if event_type == "DELETED":
            snapshot.pop(name, None)
        else:
            snapshot[name] = source.converter(pod)
        self._snapshots[source.key] = snapshot
        logger.debug(f"[STORE] {source.key}: {event_type} {name}")
        self._notify()

    def _notify(self) -> None:
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.changed.set)
        else:
            self.changed.set()
