"""
MyKind Controller for Kubernetes.

A level-triggered controller that manages one Deployment per MyKind
resource and reports the Deployment's readiness back onto the MyKind.

This package implements:
- An idempotent reconcile pass with at most one corrective write
- Cleanup of Deployments left behind by a renamed MyKind
- A rate-limited work queue with per-key exclusivity and backoff
- Watch-driven notification with periodic resync
"""

__version__ = "0.1.0"

from .controllers.mykind_controller import MyKindController, MyKindReconciler
from .models.mykind import ControllerConfiguration, MyKind, ObjectKey, ReconcileResult

__all__ = [
    "ControllerConfiguration",
    "MyKind",
    "MyKindController",
    "MyKindReconciler",
    "ObjectKey",
    "ReconcileResult",
]
