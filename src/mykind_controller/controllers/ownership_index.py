"""
Reverse index from MyKind resources to the Deployments attributed to them.

The index is populated as a side effect of observing Deployments (watch
events and the initial list) and queried by the reconciler's cleanup
pass. Attribution comes from the Deployment's controller owner
reference; Deployments owned by any other kind are never indexed.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import structlog

from ..models.mykind import ChildRef, Deployment, ObjectKey

OwnerKey = Tuple[str, str]


class OwnershipIndex:
    """
    Owner → children lookup built from observed Deployments.

    Mutated only from the event loop thread, so no locking is needed.
    """

    def __init__(self, logger: Any = None) -> None:
        self.logger = (logger or structlog.get_logger()).bind(component="ownership_index")
        self._children: Dict[OwnerKey, Set[ChildRef]] = defaultdict(set)
        self._owners: Dict[ObjectKey, Tuple[OwnerKey, ChildRef]] = {}

    @staticmethod
    def _owner_of(deployment: Deployment) -> Optional[OwnerKey]:
        owner = deployment.controller_owner()
        if owner is None or not owner.refers_to_mykind():
            return None
        return (deployment.namespace, owner.name)

    def observe(self, deployment: Deployment) -> None:
        """Index (or re-index) an added or modified Deployment."""
        owner_key = self._owner_of(deployment)
        child = ChildRef(
            namespace=deployment.namespace,
            name=deployment.name,
            uid=deployment.uid,
            terminating=deployment.terminating,
        )

        previous = self._owners.get(deployment.key)
        if previous is not None and previous != (owner_key, child):
            self._discard(deployment.key)

        if owner_key is None:
            return

        self._children[owner_key].add(child)
        self._owners[deployment.key] = (owner_key, child)

    def forget(self, deployment: Deployment) -> None:
        """Drop a deleted Deployment from the index."""
        self._discard(deployment.key)

    def prime(self, deployments: Iterable[Deployment]) -> None:
        """Seed the index from an initial list of Deployments."""
        count = 0
        for deployment in deployments:
            self.observe(deployment)
            count += 1
        self.logger.info(
            "Ownership index primed",
            observed=count,
            indexed=len(self._owners),
        )

    def _discard(self, key: ObjectKey) -> None:
        entry = self._owners.pop(key, None)
        if entry is None:
            return
        owner_key, child = entry
        children = self._children.get(owner_key)
        if children is not None:
            children.discard(child)
            if not children:
                del self._children[owner_key]

    def lookup_children_of(self, namespace: str, parent_name: str) -> Set[ChildRef]:
        """Return the Deployments currently attributed to a MyKind."""
        return set(self._children.get((namespace, parent_name), ()))

    def owner_of(self, key: ObjectKey) -> Optional[ObjectKey]:
        """Return the MyKind a Deployment is attributed to, if any."""
        entry = self._owners.get(key)
        if entry is None:
            return None
        namespace, name = entry[0]
        return ObjectKey(namespace=namespace, name=name)

    def __len__(self) -> int:
        return len(self._owners)
