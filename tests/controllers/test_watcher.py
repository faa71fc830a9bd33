"""
Watch event handling tests.

Event handlers are called directly; the stream loop runs in the test
thread against a scripted ``watch.Watch`` stand-in.
"""

import pytest
from kubernetes import client, watch
from urllib3.exceptions import ProtocolError

from mykind_controller.controllers.dispatcher import RateLimitingQueue
from mykind_controller.controllers.ownership_index import OwnershipIndex
from mykind_controller.controllers.watcher import ResourceWatcher
from mykind_controller.models.mykind import ObjectKey
from mykind_controller.utils.kubernetes_client import TransientStoreError

PARENT = ObjectKey(namespace="default", name="parent")


def deployment_event(name="web", owner="parent", kind="MyKind", uid=None):
    metadata = {"name": name, "namespace": "default", "uid": uid or f"{name}-uid"}
    if owner is not None:
        metadata["ownerReferences"] = [{
            "apiVersion": "mygroup.k8s.io/v1beta1",
            "kind": kind,
            "name": owner,
            "uid": f"{owner}-uid",
            "controller": True,
        }]
    return {"metadata": metadata, "spec": {"replicas": 1}}


def drain(queue):
    keys = []
    while True:
        key = queue.get_nowait()
        if key is None:
            return keys
        keys.append(key)
        queue.done(key)


class TestResourceWatcher:
    """Test translation of watch events into index updates and keys."""

    def setup_method(self):
        """Set up test fixtures."""
        self.index = OwnershipIndex()
        self.queue = RateLimitingQueue()
        self.watcher = ResourceWatcher(
            store=None,
            index=self.index,
            queue=self.queue,
            api_client=client.ApiClient(),
        )

    def test_mykind_event_enqueues_key(self):
        """Test any MyKind change enqueues that MyKind."""
        self.watcher.handle_mykind_event("MODIFIED", {"metadata": {"name": "parent", "namespace": "default"}})

        assert drain(self.queue) == [PARENT]

    def test_mykind_event_without_identity_ignored(self):
        """Test an event missing name or namespace enqueues nothing."""
        self.watcher.handle_mykind_event("ADDED", {"metadata": {"name": "parent"}})

        assert drain(self.queue) == []

    def test_deployment_event_indexes_and_enqueues_owner(self):
        """Test an owned Deployment is indexed and its owner enqueued."""
        self.watcher.handle_deployment_event("ADDED", deployment_event())

        assert {c.name for c in self.index.lookup_children_of("default", "parent")} == {"web"}
        assert drain(self.queue) == [PARENT]

    def test_deployment_delete_forgets_and_enqueues_owner(self):
        """Test a deleted Deployment leaves the index and wakes its owner."""
        self.watcher.handle_deployment_event("ADDED", deployment_event())
        drain(self.queue)

        self.watcher.handle_deployment_event("DELETED", deployment_event())

        assert self.index.lookup_children_of("default", "parent") == set()
        assert drain(self.queue) == [PARENT]

    def test_owner_change_enqueues_both_owners(self):
        """Test re-attribution wakes the previous and the new owner."""
        self.watcher.handle_deployment_event("ADDED", deployment_event(owner="first"))
        drain(self.queue)

        self.watcher.handle_deployment_event("MODIFIED", deployment_event(owner="second"))

        assert {k.name for k in drain(self.queue)} == {"first", "second"}

    def test_unowned_deployment_enqueues_nothing(self):
        """Test Deployments not controlled by a MyKind are ignored."""
        self.watcher.handle_deployment_event("ADDED", deployment_event(owner=None))
        self.watcher.handle_deployment_event("ADDED", deployment_event(name="rs", kind="ReplicaSet"))

        assert drain(self.queue) == []
        assert len(self.index) == 0

    def test_malformed_deployment_ignored(self):
        """Test a Deployment event without a name is dropped."""
        self.watcher.handle_deployment_event("ADDED", {"metadata": {"namespace": "default"}})

        assert drain(self.queue) == []

    @pytest.mark.asyncio
    async def test_resync_tolerates_list_failure(self):
        """Test a failed resync list is logged and retried on the next period."""

        class FailingStore:
            calls = 0

            async def list_mykinds(self):
                FailingStore.calls += 1
                if FailingStore.calls > 1:
                    watcher.stop()
                raise TransientStoreError("unavailable")

        watcher = self.watcher
        self.watcher.store = FailingStore()
        self.watcher.resync_period = 0

        await self.watcher._resync_loop()

        assert FailingStore.calls == 2
        assert drain(self.queue) == []


class ScriptedWatch:
    """Stands in for ``watch.Watch``; each ``stream`` call plays the next script entry."""

    scripts = []
    streams = 0

    def stream(self, func, *args, **kwargs):
        ScriptedWatch.streams += 1
        step = ScriptedWatch.scripts.pop(0)
        if isinstance(step, Exception):
            raise step
        return iter(step())

    def stop(self):
        pass


class TestWatchRestart:
    """Test watch streams are restarted after errors."""

    def setup_method(self):
        """Set up test fixtures."""
        self.watcher = ResourceWatcher(
            store=None,
            index=OwnershipIndex(),
            queue=RateLimitingQueue(),
            api_client=client.ApiClient(),
            restart_delay=0,
        )
        ScriptedWatch.scripts = []
        ScriptedWatch.streams = 0

    def _stop_watcher(self):
        self.watcher.stop()
        return []

    @pytest.mark.parametrize("error", [
        ProtocolError("Connection broken: IncompleteRead(0 bytes read)"),
        ConnectionResetError("reset by peer"),
    ])
    def test_stream_restarts_after_transport_error(self, monkeypatch, error):
        """Test a dropped watch connection starts a new stream instead of ending the thread."""
        monkeypatch.setattr(watch, "Watch", ScriptedWatch)
        ScriptedWatch.scripts = [error, self._stop_watcher]

        self.watcher._run_watch("deployment", self.watcher.handle_deployment_event)

        assert ScriptedWatch.streams == 2

    def test_stream_restarts_after_error_event(self, monkeypatch):
        """Test an ERROR event (such as an expired resourceVersion) restarts the stream."""
        monkeypatch.setattr(watch, "Watch", ScriptedWatch)
        ScriptedWatch.scripts = [
            lambda: [{"type": "ERROR", "raw_object": {"code": 410, "reason": "Expired"}}],
            self._stop_watcher,
        ]

        self.watcher._run_watch("mykind", self.watcher.handle_mykind_event)

        assert ScriptedWatch.streams == 2
