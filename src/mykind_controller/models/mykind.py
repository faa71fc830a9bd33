"""
MyKind controller models with type safety and validation.

This module defines the core data models for the controller: the MyKind
parent resource, the managed Deployment projection, reconcile outcomes,
and the controller configuration.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import PositiveInt

MYKIND_GROUP = "mygroup.k8s.io"
MYKIND_VERSION = "v1beta1"
MYKIND_API_VERSION = f"{MYKIND_GROUP}/{MYKIND_VERSION}"
MYKIND_KIND = "MyKind"
MYKIND_PLURAL = "mykinds"

DEPLOYMENT_NAME_LABEL = "example-controller.jetstack.io/deployment-name"


class ObjectKey(BaseModel):
    """Namespaced identity of a resource, used as the reconcile key."""

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    @classmethod
    def parse(cls, value: str) -> "ObjectKey":
        """Parse a ``namespace/name`` string."""
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name or "/" in name:
            raise ValueError(f"Invalid object key {value!r}, expected namespace/name")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the controller relies on."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    namespace: str = Field(..., min_length=1)
    uid: Optional[str] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")


class MyKindSpec(BaseModel):
    """
    Desired state of a MyKind resource.

    ``deployment_name`` identifies the single Deployment this resource
    currently wants; ``replicas`` defaults to one when absent.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deployment_name: str = Field(
        ...,
        alias="deploymentName",
        min_length=1,
        max_length=64,
        description="Name of the Deployment the controller should manage",
    )
    replicas: Optional[int] = Field(
        default=None,
        ge=0,
        description="Replica count for the Deployment (default 1)",
    )

    @property
    def desired_replicas(self) -> int:
        return 1 if self.replicas is None else self.replicas


class MyKindStatus(BaseModel):
    """Observed state of a MyKind resource, written only by the controller."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ready_replicas: int = Field(default=0, alias="readyReplicas", ge=0)


class MyKind(BaseModel):
    """The MyKind parent resource."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    metadata: ObjectMeta
    spec: MyKindSpec
    status: MyKindStatus = Field(default_factory=MyKindStatus)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def deployment_key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.spec.deployment_name)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "MyKind":
        return cls.model_validate(manifest)

    def to_manifest(self) -> Dict[str, Any]:
        manifest = {"apiVersion": MYKIND_API_VERSION, "kind": MYKIND_KIND}
        manifest.update(self.model_dump(by_alias=True, exclude_none=True))
        return manifest


class OwnerReference(BaseModel):
    """
    Attribution link from a child to its parent.

    Used for indexing and for cluster-side cascading deletion only; the
    controller never treats it as a lifetime guarantee.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: str
    uid: Optional[str] = None
    controller: bool = False
    block_owner_deletion: bool = Field(default=False, alias="blockOwnerDeletion")

    def refers_to_mykind(self) -> bool:
        group = self.api_version.rpartition("/")[0]
        return self.kind == MYKIND_KIND and group == MYKIND_GROUP


class ContainerTemplate(BaseModel):
    """Single container of the managed workload."""

    name: str
    image: str


class Deployment(BaseModel):
    """
    Projection of an ``apps/v1`` Deployment onto the fields the controller
    manages and observes.
    """

    name: str
    namespace: str
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    replicas: int = Field(default=1, ge=0)
    selector: Dict[str, str] = Field(default_factory=dict)
    template_labels: Dict[str, str] = Field(default_factory=dict)
    containers: List[ContainerTemplate] = Field(default_factory=list)
    ready_replicas: int = Field(default=0, ge=0)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    @property
    def terminating(self) -> bool:
        """True once deletion was requested but finalizers still hold the object."""
        return self.deletion_timestamp is not None

    def controller_owner(self) -> Optional[OwnerReference]:
        """Return the owner reference marked as controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "Deployment":
        """Build from a camelCase Deployment manifest as served by the API."""
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        status = manifest.get("status") or {}
        template = spec.get("template") or {}
        pod_spec = template.get("spec") or {}

        replicas = spec.get("replicas")
        return cls(
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            labels=metadata.get("labels") or {},
            owner_references=[
                OwnerReference.model_validate(ref)
                for ref in metadata.get("ownerReferences") or []
            ],
            replicas=1 if replicas is None else replicas,
            selector=(spec.get("selector") or {}).get("matchLabels") or {},
            template_labels=(template.get("metadata") or {}).get("labels") or {},
            containers=[
                ContainerTemplate(name=c.get("name"), image=c.get("image"))
                for c in pod_spec.get("containers") or []
            ],
            ready_replicas=status.get("readyReplicas") or 0,
        )

    def to_manifest(self) -> Dict[str, Any]:
        """Render the desired-state manifest (status is never rendered)."""
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(sorted(self.labels.items())),
            "ownerReferences": [
                ref.model_dump(by_alias=True, exclude_none=True)
                for ref in self.owner_references
            ],
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version

        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": metadata,
            "spec": {
                "replicas": self.replicas,
                "selector": {"matchLabels": dict(sorted(self.selector.items()))},
                "template": {
                    "metadata": {"labels": dict(sorted(self.template_labels.items()))},
                    "spec": {
                        "containers": [c.model_dump() for c in self.containers],
                    },
                },
            },
        }


class ChildRef(BaseModel):
    """Identity of an indexed child, including its uid for delete preconditions."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str
    uid: Optional[str] = None
    terminating: bool = False

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)


class EventType(str, Enum):
    """Kubernetes event severities."""

    NORMAL = "Normal"
    WARNING = "Warning"


class ReconcileAction(str, Enum):
    """
    The single class of work a reconcile pass performed.

    Each pass performs at most one corrective write; cleanup deletions
    end the pass so the replacement child is created on a later one.
    """

    PARENT_GONE = "parent_gone"      # Parent not found, nothing to do
    CLEANED_UP = "cleaned_up"        # Stale children deleted
    CREATED = "created"              # Managed Deployment created
    SCALED = "scaled"                # Replica count corrected
    STATUS_SYNCED = "status_synced"  # Parent status written
    UP_TO_DATE = "up_to_date"        # Converged, no write needed


class ReconcileResult(BaseModel):
    """Outcome of one reconcile pass."""

    action: ReconcileAction
    requeue: bool = False
    deleted: int = Field(default=0, ge=0)


class WorkloadTemplate(BaseModel):
    """Hardcoded workload the managed Deployment runs."""

    container_name: str = Field(
        default="nginx",
        pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
        description="Container name (must be DNS-compatible)",
    )
    image: str = Field(
        default="nginx:latest",
        min_length=1,
        description="Container image",
    )


class RetryConfiguration(BaseModel):
    """
    Per-key retry behaviour of the work queue.

    Delays grow as ``base_delay * 2**failures`` capped at ``max_delay``.
    """

    base_delay: float = Field(
        default=0.005,
        gt=0,
        description="Delay after the first failure (seconds)",
    )
    max_delay: float = Field(
        default=1000.0,
        gt=0,
        description="Upper bound for a single backoff delay (seconds)",
    )
    max_retries: PositiveInt = Field(
        default=15,
        description="Consecutive failures before a key is dropped until its next event",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfiguration":
        if self.base_delay >= self.max_delay:
            raise ValueError("base_delay must be less than max_delay")
        return self


class ControllerConfiguration(BaseModel):
    """
    Main controller configuration.

    Aggregates all configuration components required to run the
    MyKind controller.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    namespace: Optional[str] = Field(
        default=None,
        description="Namespace to watch (all namespaces when unset)",
    )
    workers: PositiveInt = Field(
        default=2,
        le=64,
        description="Number of concurrent reconcile workers",
    )
    resync_period: PositiveInt = Field(
        default=300,
        description="Interval between full resyncs (seconds)",
    )
    retry: RetryConfiguration = Field(
        default_factory=RetryConfiguration,
        description="Work queue retry configuration",
    )
    template: WorkloadTemplate = Field(
        default_factory=WorkloadTemplate,
        description="Workload template for managed Deployments",
    )
    monitoring_port: PositiveInt = Field(
        default=8080,
        le=65535,
        description="Port for the Prometheus metrics endpoint",
    )
    enable_metrics: bool = Field(
        default=True,
        description="Enable Prometheus metrics",
    )
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level",
    )
    log_format: str = Field(
        default="json",
        pattern=r"^(json|console)$",
        description="Log output format",
    )

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty namespace as cluster-wide."""
        if v is not None and not v.strip():
            return None
        return v
