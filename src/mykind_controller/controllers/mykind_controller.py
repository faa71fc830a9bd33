"""
MyKind reconciler and controller for Kubernetes.

This module implements the level-triggered reconcile pass that drives a
single managed Deployment toward the state a MyKind resource declares,
and the controller that wires the pass to watches and a work queue.
Every pass re-reads current state, performs at most one corrective write,
and leaves all retrying to the dispatcher.
"""

import asyncio
import time
from typing import Any, List, Optional

import structlog
from kubernetes import client, config
from prometheus_client import Counter, Histogram, start_http_server

from ..models.mykind import (
    ChildRef,
    ControllerConfiguration,
    Deployment,
    EventType,
    MyKind,
    ObjectKey,
    ReconcileAction,
    ReconcileResult,
    WorkloadTemplate,
)
from ..utils.events import EventRecorder
from ..utils.kubernetes_client import KubernetesObjectStore, NotFoundError, StoreError
from .desired_state import build_deployment
from .dispatcher import Dispatcher
from .ownership_index import OwnershipIndex
from .watcher import ResourceWatcher


# Prometheus metrics for monitoring and alerting
RECONCILE_TOTAL = Counter(
    "mykind_reconcile_total",
    "Total reconcile passes",
    ["result"]
)
RECONCILE_DURATION = Histogram(
    "mykind_reconcile_duration_seconds",
    "Reconcile pass duration in seconds"
)
DEPLOYMENT_OPERATIONS = Counter(
    "mykind_deployment_operations_total",
    "Total Deployment operations",
    ["operation", "result"]
)
STALE_DEPLOYMENTS_DELETED = Counter(
    "mykind_stale_deployments_deleted_total",
    "Deployments deleted because they no longer match their MyKind"
)


class MyKindReconciler:
    """
    Reconciles MyKind resources.

    One pass per key:
    1. fetch the MyKind (gone means done)
    2. delete attributed Deployments with a stale name
    3. create the wanted Deployment if missing
    4. correct its replica count if drifted
    5. copy its ready replica count into the MyKind status

    The pass stops after the first corrective write; the watch event
    caused by that write triggers the next pass.
    """

    def __init__(self,
                 store: Any,
                 index: OwnershipIndex,
                 recorder: Any,
                 template: Optional[WorkloadTemplate] = None,
                 logger: Any = None) -> None:
        """
        Initialize the reconciler.

        Args:
            store: Object store (``KubernetesObjectStore`` or compatible)
            index: Ownership index populated by the watch layer
            recorder: Event recorder (``EventRecorder`` or compatible)
            template: Workload template for created Deployments
            logger: Structured logger instance
        """
        self.store = store
        self.index = index
        self.recorder = recorder
        self.template = template or WorkloadTemplate()
        self.logger = (logger or structlog.get_logger()).bind(component="mykind_reconciler")

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Run one reconcile pass for ``key``.

        Raises:
            StoreError: On any store failure other than a missing MyKind
        """
        log = self.logger.bind(mykind=str(key))
        started = time.perf_counter()
        try:
            result = await self._reconcile(key, log)
        except Exception:
            RECONCILE_TOTAL.labels(result="error").inc()
            raise
        finally:
            RECONCILE_DURATION.observe(time.perf_counter() - started)

        RECONCILE_TOTAL.labels(result=result.action.value).inc()
        return result

    async def _reconcile(self, key: ObjectKey, log: Any) -> ReconcileResult:
        log.info("fetching MyKind resource")
        try:
            mykind = await self.store.get_mykind(key)
        except NotFoundError:
            # Cluster garbage collection removes the Deployments it owned.
            log.info("MyKind resource not found, nothing to do")
            return ReconcileResult(action=ReconcileAction.PARENT_GONE)
        except StoreError as e:
            log.error("failed to get MyKind resource", error=str(e))
            raise

        deleted = await self.cleanup(mykind, log)
        if deleted:
            return ReconcileResult(
                action=ReconcileAction.CLEANED_UP,
                requeue=True,
                deleted=deleted,
            )
        if self._stale_children(mykind):
            # Remaining stale children are terminating; their DELETED event requeues us.
            log.info("waiting for stale Deployments to finish terminating")
            return ReconcileResult(action=ReconcileAction.CLEANED_UP)

        log = log.bind(deployment_name=mykind.spec.deployment_name)

        log.info("checking if an existing Deployment exists for this resource")
        try:
            deployment = await self.store.get_deployment(mykind.deployment_key)
        except NotFoundError:
            log.info("could not find existing Deployment for MyKind, creating one")
            await self._create_deployment(mykind, log)
            return ReconcileResult(action=ReconcileAction.CREATED)
        except StoreError as e:
            log.error("failed to get Deployment for MyKind resource", error=str(e))
            raise

        expected_replicas = mykind.spec.desired_replicas
        if deployment.replicas != expected_replicas:
            log.info(
                "updating replica count",
                old_count=deployment.replicas,
                new_count=expected_replicas,
            )
            await self._scale_deployment(mykind, deployment, expected_replicas, log)
            return ReconcileResult(action=ReconcileAction.SCALED)

        log.info("replica count up to date", replica_count=deployment.replicas)
        return await self.sync_status(mykind, deployment, log)

    async def _create_deployment(self, mykind: MyKind, log: Any) -> None:
        desired = build_deployment(mykind, self.template)
        try:
            await self.store.create_deployment(desired)
        except StoreError as e:
            log.error("failed to create Deployment resource", error=str(e))
            DEPLOYMENT_OPERATIONS.labels(operation="create", result="failure").inc()
            raise

        DEPLOYMENT_OPERATIONS.labels(operation="create", result="success").inc()
        await self.recorder.record(
            mykind, EventType.NORMAL, "Created", f'Created deployment "{desired.name}"'
        )
        log.info("created Deployment resource for MyKind")

    async def _scale_deployment(self,
                                mykind: MyKind,
                                deployment: Deployment,
                                replicas: int,
                                log: Any) -> None:
        try:
            await self.store.scale_deployment(deployment, replicas)
        except StoreError as e:
            log.error("failed to update Deployment replica count", error=str(e))
            DEPLOYMENT_OPERATIONS.labels(operation="scale", result="failure").inc()
            raise

        DEPLOYMENT_OPERATIONS.labels(operation="scale", result="success").inc()
        await self.recorder.record(
            mykind,
            EventType.NORMAL,
            "Scaled",
            f'Scaled deployment "{deployment.name}" to {replicas} replicas',
        )

    def _stale_children(self, mykind: MyKind) -> List[ChildRef]:
        children = self.index.lookup_children_of(mykind.metadata.namespace, mykind.metadata.name)
        return sorted(
            (c for c in children if c.name != mykind.spec.deployment_name),
            key=lambda c: c.name,
        )

    async def cleanup(self, mykind: MyKind, log: Any = None) -> int:
        """
        Delete Deployments attributed to ``mykind`` that it no longer wants.

        Children already terminating are left to their finalizers and are
        not deleted again.

        Returns:
            Number of Deployments deleted in this call
        """
        log = log or self.logger.bind(mykind=str(mykind.key))
        log.info("finding existing Deployments for MyKind resource")

        deleted = 0
        for child in self._stale_children(mykind):
            if child.terminating:
                log.debug("stale Deployment already terminating", deployment=child.name)
                continue

            try:
                await self.store.delete_deployment(child)
            except NotFoundError:
                log.debug("stale Deployment already gone", deployment=child.name)
                continue
            except StoreError as e:
                log.error("failed to delete Deployment resource", deployment=child.name, error=str(e))
                DEPLOYMENT_OPERATIONS.labels(operation="delete", result="failure").inc()
                raise

            DEPLOYMENT_OPERATIONS.labels(operation="delete", result="success").inc()
            STALE_DEPLOYMENTS_DELETED.inc()
            await self.recorder.record(
                mykind, EventType.NORMAL, "Deleted", f'Deleted deployment "{child.name}"'
            )
            deleted += 1

        log.info("finished cleaning up old Deployment resources", number_deleted=deleted)
        return deleted

    async def sync_status(self,
                          mykind: MyKind,
                          deployment: Deployment,
                          log: Any = None) -> ReconcileResult:
        """
        Copy the Deployment's ready replica count onto the MyKind status.

        Only the status sub-resource is written, and only when the value
        changed. Write failures propagate so the pass is retried.
        """
        log = log or self.logger.bind(mykind=str(mykind.key))
        if mykind.status.ready_replicas == deployment.ready_replicas:
            log.info("resource status already up to date", ready_replicas=deployment.ready_replicas)
            return ReconcileResult(action=ReconcileAction.UP_TO_DATE)

        log.info("updating MyKind resource status")
        updated = mykind.model_copy(deep=True)
        updated.status.ready_replicas = deployment.ready_replicas
        try:
            await self.store.update_mykind_status(updated)
        except StoreError as e:
            log.error("failed to update MyKind status", error=str(e))
            raise

        log.info("resource status synced", ready_replicas=deployment.ready_replicas)
        return ReconcileResult(action=ReconcileAction.STATUS_SYNCED)


class MyKindController:
    """
    MyKind controller process.

    Wires the object store, ownership index, event recorder, reconciler,
    dispatcher and watcher together and runs them until stopped.
    """

    def __init__(self, config: ControllerConfiguration, api_client: Optional[client.ApiClient] = None) -> None:
        self.config = config
        self.logger = structlog.get_logger().bind(
            component="mykind_controller",
            namespace=config.namespace or "*",
        )
        self.api_client = api_client

        self.store: Optional[KubernetesObjectStore] = None
        self.index = OwnershipIndex(logger=self.logger)
        self.reconciler: Optional[MyKindReconciler] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.watcher: Optional[ResourceWatcher] = None

        self._running = False
        self._shutdown_event = asyncio.Event()

        self.logger.info(
            "MyKind controller initialized",
            workers=config.workers,
            resync_period=config.resync_period,
        )

    def _build(self) -> None:
        if self.api_client is None:
            load_kubernetes_config(self.logger)
            self.api_client = client.ApiClient()

        self.store = KubernetesObjectStore(
            namespace=self.config.namespace,
            logger=self.logger,
            api_client=self.api_client,
        )
        recorder = EventRecorder(logger=self.logger, api_client=self.api_client)
        self.reconciler = MyKindReconciler(
            store=self.store,
            index=self.index,
            recorder=recorder,
            template=self.config.template,
            logger=self.logger,
        )
        self.dispatcher = Dispatcher.from_config(
            self.reconciler.reconcile,
            self.config.retry,
            workers=self.config.workers,
            logger=self.logger,
        )
        self.watcher = ResourceWatcher(
            store=self.store,
            index=self.index,
            queue=self.dispatcher.queue,
            namespace=self.config.namespace,
            resync_period=self.config.resync_period,
            api_client=self.api_client,
            logger=self.logger,
        )

    async def start(self) -> None:
        """
        Start the controller and block until ``stop`` is called.

        Raises:
            RuntimeError: If the controller is already running
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting MyKind controller")
        tasks: List[asyncio.Task] = []
        try:
            self._build()

            if self.config.enable_metrics:
                start_http_server(self.config.monitoring_port)
                self.logger.info("Metrics server started", port=self.config.monitoring_port)

            self.index.prime(await self.store.list_deployments())

            tasks.extend(self.watcher.start())
            tasks.extend(self.dispatcher.start())

            self._running = True
            self.logger.info("MyKind controller started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.error("Failed to run controller", error=str(e))
            raise
        finally:
            if self.watcher:
                self.watcher.stop()
            if self.dispatcher:
                await self.dispatcher.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.store:
                await self.store.close()
            self._running = False

    async def stop(self) -> None:
        """Signal the controller to shut down."""
        self.logger.info("Stopping MyKind controller")
        self._shutdown_event.set()


def load_kubernetes_config(logger: Any) -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")
