"""
Watch-driven notification source for the MyKind controller.

Streams MyKind and Deployment changes from the API server, keeps the
ownership index current, and turns every change into a reconcile key
for the owning MyKind. A periodic resync re-enqueues every MyKind so
that drift is corrected even without events.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from ..models.mykind import MYKIND_GROUP, MYKIND_PLURAL, MYKIND_VERSION, Deployment, ObjectKey
from ..utils.kubernetes_client import StoreError
from .dispatcher import RateLimitingQueue
from .ownership_index import OwnershipIndex

DELETED = "DELETED"


class ResourceWatcher:
    """
    Feeds the work queue from Kubernetes watch streams.

    Watch streams block, so each runs in a daemon thread and hands events
    to the event loop with ``call_soon_threadsafe``. All index and queue
    mutations therefore happen on the loop thread.
    """

    def __init__(self,
                 store: Any,
                 index: OwnershipIndex,
                 queue: RateLimitingQueue,
                 namespace: Optional[str] = None,
                 resync_period: float = 300,
                 api_client: Optional[client.ApiClient] = None,
                 logger: Any = None,
                 watch_timeout: int = 300,
                 restart_delay: float = 5.0) -> None:
        self.store = store
        self.index = index
        self.queue = queue
        self.namespace = namespace
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.restart_delay = restart_delay
        self.logger = (logger or structlog.get_logger()).bind(component="watcher")

        self.custom = client.CustomObjectsApi(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)

        self._stopped = threading.Event()
        self._watches: List[watch.Watch] = []
        self._threads: List[threading.Thread] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # Event handlers, always called on the loop thread

    def handle_mykind_event(self, event_type: str, manifest: Dict[str, Any]) -> None:
        metadata = manifest.get("metadata") or {}
        try:
            key = ObjectKey(namespace=metadata.get("namespace"), name=metadata.get("name"))
        except ValidationError:
            self.logger.warning("Ignoring MyKind event without identity", event_type=event_type)
            return
        self.queue.add(key)

    def handle_deployment_event(self, event_type: str, manifest: Dict[str, Any]) -> None:
        try:
            deployment = Deployment.from_manifest(manifest)
        except ValidationError as e:
            self.logger.warning("Ignoring malformed Deployment event", event_type=event_type, error=str(e))
            return

        previous_owner = self.index.owner_of(deployment.key)
        if event_type == DELETED:
            self.index.forget(deployment)
        else:
            self.index.observe(deployment)

        owners = {previous_owner, self.index.owner_of(deployment.key)}
        owner_ref = deployment.controller_owner()
        if owner_ref is not None and owner_ref.refers_to_mykind():
            owners.add(ObjectKey(namespace=deployment.namespace, name=owner_ref.name))

        for owner in owners:
            if owner is not None:
                self.queue.add(owner)

    # Watch threads

    def _stream_args(self, kind: str) -> Tuple[Callable[..., Any], List[Any], Dict[str, Any]]:
        if kind == "mykind":
            if self.namespace:
                return (self.custom.list_namespaced_custom_object,
                        [MYKIND_GROUP, MYKIND_VERSION, self.namespace, MYKIND_PLURAL], {})
            return (self.custom.list_cluster_custom_object,
                    [MYKIND_GROUP, MYKIND_VERSION, MYKIND_PLURAL], {})

        if self.namespace:
            return self.apps_v1.list_namespaced_deployment, [], {"namespace": self.namespace}
        return self.apps_v1.list_deployment_for_all_namespaces, [], {}

    def _run_watch(self, kind: str, handler: Callable[[str, Dict[str, Any]], None]) -> None:
        log = self.logger.bind(resource=kind)
        func, args, kwargs = self._stream_args(kind)

        while not self._stopped.is_set():
            w = watch.Watch()
            self._watches.append(w)
            try:
                log.debug("Starting watch stream")
                for event in w.stream(func, *args, timeout_seconds=self.watch_timeout, **kwargs):
                    if self._stopped.is_set():
                        break
                    event_type = event.get("type")
                    if event_type == "ERROR":
                        log.warning("Watch stream returned an error", event=event.get("raw_object"))
                        break
                    manifest = event.get("raw_object") or event.get("object")
                    self._loop.call_soon_threadsafe(handler, event_type, manifest)
            except (ApiException, HTTPError, OSError) as e:
                log.warning("Watch stream failed, restarting", error=str(e))
                self._stopped.wait(self.restart_delay)
            finally:
                w.stop()
                self._watches.remove(w)

    async def _resync_loop(self) -> None:
        while not self._stopped.is_set():
            await asyncio.sleep(self.resync_period)
            try:
                mykinds = await self.store.list_mykinds()
            except StoreError as e:
                self.logger.warning("Periodic resync failed", error=str(e))
                continue

            for mykind in mykinds:
                self.queue.add(mykind.key)
            self.logger.debug("Periodic resync enqueued resources", count=len(mykinds))

    def start(self) -> List[asyncio.Task]:
        """Start watch threads and return the resync task."""
        self._loop = asyncio.get_running_loop()
        self._stopped.clear()

        for kind, handler in (("mykind", self.handle_mykind_event),
                              ("deployment", self.handle_deployment_event)):
            thread = threading.Thread(
                target=self._run_watch,
                args=(kind, handler),
                name=f"watch-{kind}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        self.logger.info("Watcher started", namespace=self.namespace or "*")
        return [asyncio.create_task(self._resync_loop())]

    def stop(self) -> None:
        self._stopped.set()
        for w in list(self._watches):
            w.stop()
        self.logger.info("Watcher stopped")
