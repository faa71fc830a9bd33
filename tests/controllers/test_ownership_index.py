"""
Ownership index tests.
"""

from mykind_controller.controllers.ownership_index import OwnershipIndex
from mykind_controller.models.mykind import Deployment, ObjectKey, OwnerReference


def make_deployment(name, owner=None, kind="MyKind", api_version="mygroup.k8s.io/v1beta1",
                    controller=True, namespace="default", uid=None):
    refs = []
    if owner is not None:
        refs.append(OwnerReference(
            api_version=api_version,
            kind=kind,
            name=owner,
            uid=f"{owner}-uid",
            controller=controller,
        ))
    return Deployment(name=name, namespace=namespace, uid=uid or f"{name}-uid", owner_references=refs)


class TestOwnershipIndex:
    """Test population and lookup of the owner → children index."""

    def setup_method(self):
        """Set up test fixtures."""
        self.index = OwnershipIndex()

    def test_indexes_mykind_owned_deployment(self):
        """Test a Deployment controlled by a MyKind is indexed under it."""
        self.index.observe(make_deployment("web", owner="parent"))

        children = self.index.lookup_children_of("default", "parent")
        assert {c.name for c in children} == {"web"}
        assert self.index.owner_of(ObjectKey(namespace="default", name="web")) == ObjectKey(
            namespace="default", name="parent"
        )

    def test_ignores_other_owner_kinds(self):
        """Test Deployments owned by unrelated kinds are excluded."""
        self.index.observe(make_deployment("web", owner="parent", kind="ReplicaSet"))
        self.index.observe(make_deployment("api", owner="parent", api_version="othergroup.io/v1"))

        assert self.index.lookup_children_of("default", "parent") == set()
        assert len(self.index) == 0

    def test_ignores_non_controller_references(self):
        """Test only the controller owner reference attributes a Deployment."""
        self.index.observe(make_deployment("web", owner="parent", controller=False))

        assert self.index.lookup_children_of("default", "parent") == set()

    def test_ignores_unowned_deployments(self):
        """Test Deployments without owner references are excluded."""
        self.index.observe(make_deployment("web"))

        assert len(self.index) == 0

    def test_lookup_is_namespace_scoped(self):
        """Test parents with the same name in different namespaces stay separate."""
        self.index.observe(make_deployment("web", owner="parent", namespace="a"))
        self.index.observe(make_deployment("web", owner="parent", namespace="b"))

        assert {c.namespace for c in self.index.lookup_children_of("a", "parent")} == {"a"}
        assert {c.namespace for c in self.index.lookup_children_of("b", "parent")} == {"b"}

    def test_forget_removes_child(self):
        """Test a deleted Deployment disappears from the index."""
        deployment = make_deployment("web", owner="parent")
        self.index.observe(deployment)
        self.index.forget(deployment)

        assert self.index.lookup_children_of("default", "parent") == set()
        assert self.index.owner_of(deployment.key) is None

    def test_forget_unknown_is_noop(self):
        """Test forgetting a Deployment that was never indexed is harmless."""
        self.index.forget(make_deployment("ghost", owner="parent"))

        assert len(self.index) == 0

    def test_reobserve_moves_child_to_new_owner(self):
        """Test a changed owner reference re-attributes the Deployment."""
        self.index.observe(make_deployment("web", owner="first"))
        self.index.observe(make_deployment("web", owner="second"))

        assert self.index.lookup_children_of("default", "first") == set()
        assert {c.name for c in self.index.lookup_children_of("default", "second")} == {"web"}

    def test_reobserve_without_owner_drops_child(self):
        """Test removing the owner reference drops the attribution."""
        self.index.observe(make_deployment("web", owner="parent"))
        self.index.observe(make_deployment("web"))

        assert self.index.lookup_children_of("default", "parent") == set()

    def test_reobserve_same_deployment_is_idempotent(self):
        """Test repeated observation of an unchanged Deployment keeps one entry."""
        deployment = make_deployment("web", owner="parent")
        self.index.observe(deployment)
        self.index.observe(deployment)

        assert len(self.index.lookup_children_of("default", "parent")) == 1

    def test_recreated_deployment_replaces_uid(self):
        """Test a Deployment recreated under the same name is tracked by its new uid."""
        self.index.observe(make_deployment("web", owner="parent", uid="old"))
        self.index.observe(make_deployment("web", owner="parent", uid="new"))

        assert {c.uid for c in self.index.lookup_children_of("default", "parent")} == {"new"}

    def test_lookup_returns_copy(self):
        """Test callers cannot mutate the index through a lookup result."""
        self.index.observe(make_deployment("web", owner="parent"))

        self.index.lookup_children_of("default", "parent").clear()

        assert len(self.index.lookup_children_of("default", "parent")) == 1

    def test_prime_seeds_from_list(self):
        """Test priming indexes every owned Deployment in the list."""
        self.index.prime([
            make_deployment("a", owner="parent"),
            make_deployment("b", owner="parent"),
            make_deployment("c"),
        ])

        assert {c.name for c in self.index.lookup_children_of("default", "parent")} == {"a", "b"}

    def test_terminating_deployment_is_flagged(self):
        """Test a Deployment with a deletion timestamp is indexed as terminating."""
        deployment = make_deployment("web", owner="parent")
        self.index.observe(deployment)
        self.index.observe(deployment.model_copy(update={"deletion_timestamp": "2026-01-01T00:00:00Z"}))

        children = self.index.lookup_children_of("default", "parent")
        assert [(c.name, c.terminating) for c in children] == [("web", True)]
