"""
Shared test fixtures.

Provides an in-memory object store that behaves like the API server for
the operations the reconciler uses, and propagates Deployment writes to
an ownership index the way the watch layer would.
"""

import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from mykind_controller.controllers.mykind_controller import MyKindReconciler
from mykind_controller.controllers.ownership_index import OwnershipIndex
from mykind_controller.models.mykind import (
    ChildRef,
    Deployment,
    EventType,
    MyKind,
    ObjectKey,
)
from mykind_controller.utils.kubernetes_client import ConflictError, NotFoundError


class FakeObjectStore:
    """In-memory object store with a mutation log and error injection."""

    def __init__(self, index: OwnershipIndex) -> None:
        self.index = index
        self.mykinds: Dict[ObjectKey, MyKind] = {}
        self.deployments: Dict[ObjectKey, Deployment] = {}
        self.mutations: List[Tuple[str, str]] = []
        self.failures: Dict[str, Exception] = {}
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def fail_on(self, operation: str, error: Exception) -> None:
        self.failures[operation] = error

    def _check(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    # Test helpers, not counted as controller mutations

    def add_mykind(self,
                   name: str = "testresource",
                   deployment_name: str = "deployment-name",
                   replicas: Optional[int] = None,
                   namespace: str = "default") -> MyKind:
        spec = {"deploymentName": deployment_name}
        if replicas is not None:
            spec["replicas"] = replicas
        mykind = MyKind.from_manifest({
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"mykind-uid-{next(self._uids)}",
                "resourceVersion": self._next_version(),
            },
            "spec": spec,
        })
        self.mykinds[mykind.key] = mykind
        return mykind

    def edit_mykind(self, key: ObjectKey, **spec_changes) -> MyKind:
        stored = self.mykinds[key]
        spec = stored.spec.model_copy(update=spec_changes)
        stored = stored.model_copy(update={"spec": spec}, deep=True)
        stored.metadata.resource_version = self._next_version()
        self.mykinds[key] = stored
        return stored

    def add_deployment(self, deployment: Deployment) -> Deployment:
        stored = deployment.model_copy(deep=True)
        stored.uid = stored.uid or f"deployment-uid-{next(self._uids)}"
        stored.resource_version = self._next_version()
        self.deployments[stored.key] = stored
        self.index.observe(stored)
        return stored

    def set_ready(self, key: ObjectKey, ready: int) -> None:
        stored = self.deployments[key]
        stored.ready_replicas = ready
        stored.resource_version = self._next_version()

    def drift(self, key: ObjectKey, replicas: int) -> None:
        stored = self.deployments[key]
        stored.replicas = replicas
        stored.resource_version = self._next_version()

    def live_children_of(self, mykind: MyKind) -> List[str]:
        names = []
        for deployment in self.deployments.values():
            owner = deployment.controller_owner()
            if (deployment.namespace == mykind.metadata.namespace and owner is not None
                    and owner.name == mykind.metadata.name):
                names.append(deployment.name)
        return sorted(names)

    # Object store interface

    async def get_mykind(self, key: ObjectKey) -> MyKind:
        self._check("get_mykind")
        if key not in self.mykinds:
            raise NotFoundError(f"mykind {key} not found")
        return self.mykinds[key].model_copy(deep=True)

    async def list_mykinds(self) -> List[MyKind]:
        self._check("list_mykinds")
        return [m.model_copy(deep=True) for m in self.mykinds.values()]

    async def update_mykind_status(self, mykind: MyKind) -> MyKind:
        self._check("update_mykind_status")
        stored = self.mykinds.get(mykind.key)
        if stored is None:
            raise NotFoundError(f"mykind {mykind.key} not found")
        if stored.metadata.resource_version != mykind.metadata.resource_version:
            raise ConflictError("resourceVersion mismatch")
        stored.status = mykind.status.model_copy()
        stored.metadata.resource_version = self._next_version()
        self.mutations.append(("status", mykind.metadata.name))
        return stored.model_copy(deep=True)

    async def get_deployment(self, key: ObjectKey) -> Deployment:
        self._check("get_deployment")
        if key not in self.deployments:
            raise NotFoundError(f"deployment {key} not found")
        return self.deployments[key].model_copy(deep=True)

    async def list_deployments(self) -> List[Deployment]:
        return [d.model_copy(deep=True) for d in self.deployments.values()]

    async def create_deployment(self, deployment: Deployment) -> Deployment:
        self._check("create_deployment")
        if deployment.key in self.deployments:
            raise ConflictError(f"deployment {deployment.key} already exists")
        stored = self.add_deployment(deployment)
        self.mutations.append(("create", deployment.name))
        return stored.model_copy(deep=True)

    async def scale_deployment(self, deployment: Deployment, replicas: int) -> Deployment:
        self._check("scale_deployment")
        stored = self.deployments.get(deployment.key)
        if stored is None:
            raise NotFoundError(f"deployment {deployment.key} not found")
        if stored.resource_version != deployment.resource_version:
            raise ConflictError("resourceVersion mismatch")
        stored.replicas = replicas
        stored.resource_version = self._next_version()
        self.mutations.append(("scale", deployment.name))
        return stored.model_copy(deep=True)

    async def delete_deployment(self, ref: ChildRef) -> None:
        self._check("delete_deployment")
        stored = self.deployments.get(ref.key)
        if stored is None:
            raise NotFoundError(f"deployment {ref.key} not found")
        if ref.uid and stored.uid != ref.uid:
            raise ConflictError("uid precondition failed")
        del self.deployments[ref.key]
        self.index.forget(stored)
        self.mutations.append(("delete", ref.name))


class FakeEventRecorder:
    """Collects recorded events in memory."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, str, str]] = []

    async def record(self, obj: MyKind, event_type: EventType, reason: str, message: str) -> None:
        self.events.append((str(obj.key), EventType(event_type).value, reason, message))

    @property
    def reasons(self) -> List[str]:
        return [reason for _, _, reason, _ in self.events]


@pytest.fixture
def index() -> OwnershipIndex:
    return OwnershipIndex()


@pytest.fixture
def store(index: OwnershipIndex) -> FakeObjectStore:
    return FakeObjectStore(index)


@pytest.fixture
def recorder() -> FakeEventRecorder:
    return FakeEventRecorder()


@pytest.fixture
def reconciler(store: FakeObjectStore, index: OwnershipIndex, recorder: FakeEventRecorder) -> MyKindReconciler:
    return MyKindReconciler(store=store, index=index, recorder=recorder)
