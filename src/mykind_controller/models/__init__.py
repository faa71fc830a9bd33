"""
Data models for the MyKind controller.
"""

from .mykind import (
    ControllerConfiguration,
    Deployment,
    MyKind,
    ObjectKey,
    ReconcileAction,
    ReconcileResult,
)

__all__ = [
    "ControllerConfiguration",
    "Deployment",
    "MyKind",
    "ObjectKey",
    "ReconcileAction",
    "ReconcileResult",
]
