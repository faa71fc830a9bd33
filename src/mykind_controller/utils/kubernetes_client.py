"""
Kubernetes object store wrapper for the MyKind controller.

This module provides a typed async wrapper around the Kubernetes Python
client. Blocking client calls run in worker threads, API errors are
translated into a small exception hierarchy the reconciler understands,
and every object crossing the boundary is validated into a model.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from ..models.mykind import (
    MYKIND_GROUP,
    MYKIND_PLURAL,
    MYKIND_VERSION,
    ChildRef,
    Deployment,
    MyKind,
    ObjectKey,
)


class StoreError(Exception):
    """Base class for object store failures."""
    pass


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""
    pass


class ConflictError(StoreError):
    """Raised on optimistic-concurrency or precondition conflicts."""
    pass


class TransientStoreError(StoreError):
    """Raised for network and backing-store failures worth retrying."""
    pass


class MalformedResourceError(StoreError):
    """Raised when an object served by the API fails model validation."""
    pass


def translate_api_exception(error: ApiException) -> StoreError:
    """Map a Kubernetes ``ApiException`` onto the store error hierarchy."""
    message = f"{error.status} {error.reason}"
    if error.status == 404:
        return NotFoundError(message)
    if error.status == 409:
        return ConflictError(message)
    return TransientStoreError(message)


class KubernetesObjectStore:
    """
    Async object store backed by the Kubernetes API.

    Provides namespaced get/list/create/update/delete for MyKind and
    Deployment resources with:
    - Status updates through the ``/status`` sub-resource only
    - ``resourceVersion`` guards on every update
    - uid preconditions on delete
    - Translation of API failures into ``StoreError`` subclasses
    """

    def __init__(self,
                 namespace: Optional[str],
                 logger: Any,
                 api_client: Optional[client.ApiClient] = None) -> None:
        """
        Initialize the object store.

        Args:
            namespace: Namespace to list from (all namespaces when None)
            logger: Structured logger instance
            api_client: Configured API client (default client when None)
        """
        self.namespace = namespace
        self.logger = logger.bind(component="k8s_store")

        self.api_client = api_client or client.ApiClient()
        self.custom = client.CustomObjectsApi(self.api_client)
        self.apps_v1 = client.AppsV1Api(self.api_client)

        self._operation_counts: Dict[str, int] = {}

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as e:
            error = translate_api_exception(e)
            self.logger.debug(
                "Kubernetes API call failed",
                operation=operation,
                status_code=e.status,
                reason=e.reason,
            )
            raise error from e
        except (HTTPError, OSError) as e:
            # urllib3 raises MaxRetryError and ProtocolError outside the OSError tree.
            raise TransientStoreError(f"{operation} failed: {e}") from e

        self._operation_counts[operation] = self._operation_counts.get(operation, 0) + 1
        return result

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    @staticmethod
    def _parse_mykind(manifest: Dict[str, Any]) -> MyKind:
        try:
            return MyKind.from_manifest(manifest)
        except ValidationError as e:
            raise MalformedResourceError(f"Invalid MyKind resource: {e}") from e

    @staticmethod
    def _parse_deployment(manifest: Dict[str, Any]) -> Deployment:
        try:
            return Deployment.from_manifest(manifest)
        except ValidationError as e:
            raise MalformedResourceError(f"Invalid Deployment resource: {e}") from e

    # MyKind resources

    async def get_mykind(self, key: ObjectKey) -> MyKind:
        manifest = await self._call(
            "mykind_get",
            self.custom.get_namespaced_custom_object,
            MYKIND_GROUP, MYKIND_VERSION, key.namespace, MYKIND_PLURAL, key.name,
        )
        return self._parse_mykind(manifest)

    async def list_mykinds(self) -> List[MyKind]:
        """List MyKind resources, skipping (and logging) malformed ones."""
        if self.namespace:
            response = await self._call(
                "mykind_list",
                self.custom.list_namespaced_custom_object,
                MYKIND_GROUP, MYKIND_VERSION, self.namespace, MYKIND_PLURAL,
            )
        else:
            response = await self._call(
                "mykind_list",
                self.custom.list_cluster_custom_object,
                MYKIND_GROUP, MYKIND_VERSION, MYKIND_PLURAL,
            )

        mykinds = []
        for item in response.get("items", []):
            try:
                mykinds.append(self._parse_mykind(item))
            except MalformedResourceError as e:
                self.logger.warning(
                    "Skipping malformed MyKind resource",
                    name=(item.get("metadata") or {}).get("name"),
                    error=str(e),
                )
        return mykinds

    async def update_mykind_status(self, mykind: MyKind) -> MyKind:
        """
        Persist ``mykind.status`` through the status sub-resource.

        The API server ignores everything but ``status`` on this path, so
        spec edits made by users are never overwritten. The object's
        ``resourceVersion`` guards against concurrent writers.

        Raises:
            ConflictError: If the resource changed since it was read
        """
        manifest = await self._call(
            "mykind_status_update",
            self.custom.replace_namespaced_custom_object_status,
            MYKIND_GROUP, MYKIND_VERSION,
            mykind.metadata.namespace, MYKIND_PLURAL, mykind.metadata.name,
            mykind.to_manifest(),
        )
        return self._parse_mykind(manifest)

    # Deployments

    async def get_deployment(self, key: ObjectKey) -> Deployment:
        response = await self._call(
            "deployment_get",
            self.apps_v1.read_namespaced_deployment,
            name=key.name, namespace=key.namespace,
        )
        return self._parse_deployment(self._serialize(response))

    async def list_deployments(self) -> List[Deployment]:
        if self.namespace:
            response = await self._call(
                "deployment_list",
                self.apps_v1.list_namespaced_deployment,
                namespace=self.namespace,
            )
        else:
            response = await self._call(
                "deployment_list",
                self.apps_v1.list_deployment_for_all_namespaces,
            )

        deployments = []
        for item in response.items:
            try:
                deployments.append(self._parse_deployment(self._serialize(item)))
            except MalformedResourceError as e:
                self.logger.warning(
                    "Skipping malformed Deployment",
                    name=item.metadata.name,
                    error=str(e),
                )
        return deployments

    async def create_deployment(self, deployment: Deployment) -> Deployment:
        response = await self._call(
            "deployment_create",
            self.apps_v1.create_namespaced_deployment,
            namespace=deployment.namespace,
            body=deployment.to_manifest(),
        )
        created = self._parse_deployment(self._serialize(response))
        self.logger.info(
            "Deployment created",
            deployment=str(created.key),
            uid=created.uid,
        )
        return created

    async def scale_deployment(self, deployment: Deployment, replicas: int) -> Deployment:
        """
        Set the replica count of an existing Deployment.

        Only ``spec.replicas`` is patched, guarded by the
        ``resourceVersion`` the Deployment was read at.

        Raises:
            ConflictError: If the Deployment changed since it was read
        """
        body: Dict[str, Any] = {"spec": {"replicas": replicas}}
        if deployment.resource_version:
            body["metadata"] = {"resourceVersion": deployment.resource_version}

        response = await self._call(
            "deployment_scale",
            self.apps_v1.patch_namespaced_deployment,
            name=deployment.name,
            namespace=deployment.namespace,
            body=body,
        )
        return self._parse_deployment(self._serialize(response))

    async def delete_deployment(self, ref: ChildRef) -> None:
        """
        Delete a Deployment, preconditioned on its uid when known.

        Raises:
            NotFoundError: If the Deployment is already gone
            ConflictError: If a different object now holds the name
        """
        options = client.V1DeleteOptions(
            propagation_policy="Background",
            preconditions=client.V1Preconditions(uid=ref.uid) if ref.uid else None,
        )
        await self._call(
            "deployment_delete",
            self.apps_v1.delete_namespaced_deployment,
            name=ref.name,
            namespace=ref.namespace,
            body=options,
        )
        self.logger.info("Deployment deletion initiated", deployment=str(ref.key))

    def get_operation_stats(self) -> Dict[str, int]:
        """Get operation statistics for monitoring."""
        return self._operation_counts.copy()

    async def close(self) -> None:
        self.logger.info(
            "Kubernetes store closing",
            operation_counts=self._operation_counts,
        )
        await asyncio.to_thread(self.api_client.close)
