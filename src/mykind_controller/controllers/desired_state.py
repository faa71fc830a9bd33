"""
Desired Deployment construction for MyKind resources.

``build_deployment`` is pure: the same MyKind and template always yield
an identical manifest, so the reconciler can re-derive it on every
creation instead of caching it.
"""

import hashlib
from typing import Optional

from ..models.mykind import (
    DEPLOYMENT_NAME_LABEL,
    MYKIND_API_VERSION,
    MYKIND_KIND,
    ContainerTemplate,
    Deployment,
    MyKind,
    OwnerReference,
    WorkloadTemplate,
)

MAX_LABEL_VALUE_LENGTH = 63
_DIGEST_LENGTH = 10


def selector_value(deployment_name: str) -> str:
    """
    Label value identifying the pods of ``deployment_name``.

    Names longer than a label value allows are truncated and suffixed
    with a digest of the full name so distinct names never collide.
    """
    if len(deployment_name) <= MAX_LABEL_VALUE_LENGTH:
        return deployment_name

    digest = hashlib.sha256(deployment_name.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    prefix = deployment_name[:MAX_LABEL_VALUE_LENGTH - _DIGEST_LENGTH - 1].rstrip("-._")
    return f"{prefix}-{digest}"


def owner_reference_for(mykind: MyKind) -> OwnerReference:
    return OwnerReference(
        api_version=MYKIND_API_VERSION,
        kind=MYKIND_KIND,
        name=mykind.metadata.name,
        uid=mykind.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def build_deployment(mykind: MyKind, template: Optional[WorkloadTemplate] = None) -> Deployment:
    """
    Build the Deployment a MyKind resource wants.

    Args:
        mykind: Parent resource
        template: Workload to run (default nginx template)

    Returns:
        Desired Deployment, without server-assigned fields
    """
    template = template or WorkloadTemplate()
    labels = {DEPLOYMENT_NAME_LABEL: selector_value(mykind.spec.deployment_name)}

    return Deployment(
        name=mykind.spec.deployment_name,
        namespace=mykind.metadata.namespace,
        labels=dict(labels),
        owner_references=[owner_reference_for(mykind)],
        replicas=mykind.spec.desired_replicas,
        selector=dict(labels),
        template_labels=dict(labels),
        containers=[
            ContainerTemplate(name=template.container_name, image=template.image),
        ],
    )
