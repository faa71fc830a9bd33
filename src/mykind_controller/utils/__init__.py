"""
Utility modules for the MyKind controller.

This package contains the Kubernetes object store wrapper and the
event recorder.
"""

from .events import EventRecorder
from .kubernetes_client import (
    ConflictError,
    KubernetesObjectStore,
    MalformedResourceError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)

__all__ = [
    "ConflictError",
    "EventRecorder",
    "KubernetesObjectStore",
    "MalformedResourceError",
    "NotFoundError",
    "StoreError",
    "TransientStoreError",
]
