"""
MyKind controller package.

This package contains the reconcile pass, the ownership index, the
desired-state builder and the queue and watch machinery that drive them.
"""

from .mykind_controller import MyKindController, MyKindReconciler
from .ownership_index import OwnershipIndex

__all__ = ["MyKindController", "MyKindReconciler", "OwnershipIndex"]
