"""Tests for watch event mapping and reconcile dispatch."""

import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1ObjectMeta, V1OwnerReference
from kubernetes.client.exceptions import ApiException

from honsefarm_operator.errors import ApplyError, ReconcileCancelled
from honsefarm_operator.models import WatchEvent
from honsefarm_operator.reconciler import ReconcileResult
from honsefarm_operator.watch import ClusterWatcher, OperatorLoop, child_cluster_key

from conftest import make_cluster


class FakeReconciler:
    """Records passes and detects overlapping passes for the same key."""

    def __init__(self, result=None, error=None, delay=0.1):
        self.result = result or ReconcileResult()
        self.error = error
        self.delay = delay
        self.calls = []
        self.finalized = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def reconcile(self, cluster, cancel=None):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.calls.append(cluster.key)
        try:
            threading.Event().wait(self.delay)
            if cancel is not None and cancel.is_set():
                raise ReconcileCancelled(f"reconcile of {cluster.key} cancelled")
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            with self._lock:
                self.running -= 1

    def finalize(self, cluster, cancel=None):
        self.finalized.append(cluster.key)
        return ReconcileResult()


def _event(
    event_type="ADDED", resource_type="cluster", generation=1, key="honsefarm/demo", deleting=False
):
    namespace, name = key.split("/")
    return WatchEvent(
        event_type=event_type,
        resource_type=resource_type,
        name=name,
        namespace=namespace,
        generation=generation,
        cluster_key=key,
        deleting=deleting,
    )


async def _drain(loop: OperatorLoop):
    for _ in range(200):
        if not loop._active:
            return
        await asyncio.sleep(0.01)


@pytest.fixture
def make_loop(mock_cluster_connection, settings):
    loops = []

    async def factory(reconciler):
        loop = OperatorLoop(mock_cluster_connection, settings, reconciler=reconciler)
        loop.watcher = MagicMock()
        loop.watcher.child_watches.return_value = {}
        loop.get_cluster = lambda key: make_cluster({}, name=key.split("/")[1])
        await loop.start()
        loops.append(loop)
        return loop

    yield factory
    for loop in loops:
        loop._running = False


class TestChildClusterKey:
    """Test cases for mapping children to their cluster."""

    def test_owner_labels(self):
        """Test mapping through owner labels."""
        obj = MagicMock()
        obj.metadata = V1ObjectMeta(
            name="server-svc",
            namespace="farm",
            labels={"clusters.honse.farm/name": "demo", "clusters.honse.farm/namespace": "operators"},
        )
        assert child_cluster_key(obj) == "operators/demo"

    def test_owner_reference(self):
        """Test mapping through a controller owner reference."""
        obj = MagicMock()
        obj.metadata = V1ObjectMeta(
            name="server-svc",
            namespace="honsefarm",
            owner_references=[
                V1OwnerReference(
                    api_version="clusters.honse.farm/v1alpha1",
                    kind="HonseFarmCluster",
                    name="demo",
                    uid="u",
                    controller=True,
                )
            ],
        )
        assert child_cluster_key(obj) == "honsefarm/demo"

    def test_unrelated_object(self):
        """Test that foreign objects are ignored."""
        obj = MagicMock()
        obj.metadata = V1ObjectMeta(name="other", namespace="default")
        assert child_cluster_key(obj) is None


class TestClusterWatcher:
    """Test cases for watch streams."""

    @pytest.mark.parametrize(
        "error",
        [ConnectionResetError("connection reset by peer"), ApiException(status=500, reason="Internal")],
    )
    def test_stream_reopened_after_error(self, mock_cluster_connection, error):
        """Test that a failed stream is reopened and keeps delivering events."""
        watcher = ClusterWatcher(mock_cluster_connection, retry_seconds=0)
        events = []

        def handler(event):
            events.append(event)
            watcher.stop()

        watcher.register_handler(handler)
        calls = []

        def stream(list_fn, **kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise error
            obj = {"metadata": {"name": "demo", "namespace": "honsefarm", "generation": 1}}
            return iter([{"type": "ADDED", "object": obj}])

        with patch("honsefarm_operator.watch.k8s_watch.Watch") as watch_cls:
            watch_cls.return_value.stream.side_effect = stream
            watcher.watch_clusters()

        assert len(calls) == 2
        assert [e.cluster_key for e in events] == ["honsefarm/demo"]

    def test_expired_stream_restarts_from_scratch(self, mock_cluster_connection):
        """Test that an expired resource version is dropped on restart."""
        watcher = ClusterWatcher(mock_cluster_connection, retry_seconds=0)
        calls = []

        def stream(list_fn, **kwargs):
            calls.append(kwargs)
            if len(calls) == 2:
                raise ApiException(status=410, reason="Gone")
            if len(calls) == 3:
                watcher.stop()
            return iter([])

        with patch("honsefarm_operator.watch.k8s_watch.Watch") as watch_cls:
            watch_cls.return_value.resource_version = "42"
            watch_cls.return_value.stream.side_effect = stream
            watcher.watch_clusters()

        assert [c["resource_version"] for c in calls] == [None, "42", None]


class TestOperatorLoop:
    """Test cases for reconcile dispatch."""

    @pytest.mark.asyncio
    async def test_one_pass_per_key(self, make_loop):
        """Test that events during a pass trigger exactly one follow-up pass."""
        reconciler = FakeReconciler()
        loop = await make_loop(reconciler)

        loop.dispatch(_event())
        await asyncio.sleep(0.02)
        for _ in range(5):
            loop.dispatch(_event(resource_type="deployment"))
        await _drain(loop)

        assert reconciler.max_running == 1
        assert reconciler.calls == ["honsefarm/demo", "honsefarm/demo"]
        await loop.stop()

    @pytest.mark.asyncio
    async def test_status_only_update_ignored(self, make_loop):
        """Test that a modification without a generation change is dropped."""
        reconciler = FakeReconciler(delay=0)
        loop = await make_loop(reconciler)

        loop.dispatch(_event(generation=3))
        await _drain(loop)
        loop.dispatch(_event(event_type="MODIFIED", generation=3))
        await _drain(loop)
        loop.dispatch(_event(event_type="MODIFIED", generation=4))
        await _drain(loop)

        assert len(reconciler.calls) == 2
        await loop.stop()

    @pytest.mark.asyncio
    async def test_requeue_after(self, make_loop):
        """Test that a requested re-check is scheduled."""
        reconciler = FakeReconciler(result=ReconcileResult(requeue_after=20.0), delay=0)
        loop = await make_loop(reconciler)

        loop.dispatch(_event())
        await _drain(loop)

        assert "honsefarm/demo" in loop._timers
        await loop.stop()
        assert loop._timers == {}

    @pytest.mark.asyncio
    async def test_error_requeues(self, make_loop, settings):
        """Test that a failed pass is retried after the error delay."""
        error = ApplyError("Service", "server-svc", "honsefarm", "Forbidden", status=403)
        reconciler = FakeReconciler(error=error, delay=0)
        loop = await make_loop(reconciler)

        result = await loop._reconcile_key("honsefarm/demo")
        assert result.requeue_after == settings.error_requeue_seconds
        await loop.stop()

    @pytest.mark.asyncio
    async def test_delete_cancels_pass(self, make_loop):
        """Test that deleting a cluster cancels its in-flight pass."""
        reconciler = FakeReconciler(result=ReconcileResult(requeue_after=20.0), delay=0.2)
        loop = await make_loop(reconciler)

        loop.dispatch(_event())
        await asyncio.sleep(0.05)
        loop.dispatch(_event(event_type="DELETED"))
        await _drain(loop)

        assert reconciler.calls == ["honsefarm/demo"]
        assert "honsefarm/demo" not in loop._timers
        await loop.stop()

    @pytest.mark.asyncio
    async def test_deleting_cluster_finalized(self, make_loop):
        """Test that a cluster marked for deletion is cleaned up without a generation change."""
        reconciler = FakeReconciler(delay=0)
        loop = await make_loop(reconciler)
        deleting = make_cluster({})
        deleting.metadata.deletion_timestamp = datetime.now(timezone.utc)

        loop.dispatch(_event(generation=2))
        await _drain(loop)
        loop.get_cluster = lambda key: deleting
        loop.dispatch(_event(event_type="MODIFIED", generation=2, deleting=True))
        await _drain(loop)

        assert reconciler.calls == ["honsefarm/demo"]
        assert reconciler.finalized == ["honsefarm/demo"]
        await loop.stop()
