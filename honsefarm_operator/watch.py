"""Kubernetes watch and reconcile dispatch."""

import asyncio
import logging
import threading
from typing import Any, Callable, Optional

from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError

from .cluster import ClusterConnection
from .config import Settings
from .convergence import OWNER_NAME_LABEL, OWNER_NAMESPACE_LABEL
from .errors import OperatorError, ReconcileCancelled
from .models import API_GROUP, API_VERSION, KIND, PLURAL, HonseFarmCluster, WatchEvent
from .reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)

CLUSTER = "cluster"
WATCH_RETRY_SECONDS = 5.0


def child_cluster_key(obj: Any) -> Optional[str]:
    """
    Map an owned child object back to the key of its cluster.

    Children carry the owner's name and namespace as labels; objects created
    before those labels existed are matched through their owner reference.
    """
    meta = obj.metadata
    labels = meta.labels or {}
    name = labels.get(OWNER_NAME_LABEL)
    if name:
        return f"{labels.get(OWNER_NAMESPACE_LABEL, meta.namespace)}/{name}"

    for ref in meta.owner_references or []:
        if ref.kind == KIND and ref.controller:
            return f"{meta.namespace}/{ref.name}"
    return None


class ClusterWatcher:
    """Watches HonseFarmClusters and the children they own."""

    def __init__(
        self,
        cluster: ClusterConnection,
        namespace: Optional[str] = None,
        timeout_seconds: int = 60,
        retry_seconds: float = WATCH_RETRY_SECONDS,
    ):
        """
        Initialize cluster watcher.

        Args:
            cluster: Cluster connection
            namespace: Watch clusters in this namespace only (None for all)
            timeout_seconds: Server-side timeout of one watch stream
            retry_seconds: Pause before reopening a stream that failed
        """
        self.cluster = cluster
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.retry_seconds = retry_seconds
        self._handlers: list[Callable[[WatchEvent], None]] = []
        self._streams: list[k8s_watch.Watch] = []
        self._stopped = threading.Event()

    def register_handler(self, handler: Callable[[WatchEvent], None]) -> None:
        """
        Register a handler for watch events.

        Args:
            handler: Callback invoked from the watch thread with each event
        """
        self._handlers.append(handler)

    def _emit_event(self, event: WatchEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in watch event handler: {e}", exc_info=True)

    def _stream(
        self,
        resource_type: str,
        list_fn: Callable[..., Any],
        to_event: Callable[[str, Any], Optional[WatchEvent]],
        **kwargs: Any,
    ) -> None:
        """
        Stream events until stopped, resuming from the last resource version.

        An expired resource version restarts the stream from scratch; any other
        failure is logged and the stream is reopened after ``retry_seconds``.
        """
        resource_version: Optional[str] = None
        logger.info(f"Starting watch on {resource_type}s")

        while not self._stopped.is_set():
            stream = k8s_watch.Watch()
            self._streams.append(stream)
            try:
                for raw in stream.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    **kwargs,
                ):
                    event = to_event(raw["type"], raw["object"])
                    if event is not None:
                        self._emit_event(event)
                resource_version = stream.resource_version
            except Exception as e:
                if isinstance(e, ApiException) and e.status == 410:  # Resource version too old
                    logger.warning(f"Watch on {resource_type}s expired, restarting...")
                    resource_version = None
                    continue
                logger.error(f"Error watching {resource_type}s: {e}", exc_info=True)
                self._stopped.wait(self.retry_seconds)
            finally:
                self._streams.remove(stream)

    def watch_clusters(self) -> None:
        """Watch HonseFarmCluster objects."""
        api = self.cluster.custom_objects
        if self.namespace:
            list_fn = api.list_namespaced_custom_object
            kwargs = {"namespace": self.namespace}
        else:
            list_fn = api.list_cluster_custom_object
            kwargs = {}

        def to_event(event_type: str, obj: dict) -> Optional[WatchEvent]:
            meta = obj.get("metadata") or {}
            if not meta.get("name"):
                return None
            return WatchEvent(
                event_type=event_type,
                resource_type=CLUSTER,
                name=meta["name"],
                namespace=meta.get("namespace"),
                generation=meta.get("generation"),
                cluster_key=f"{meta.get('namespace')}/{meta['name']}",
                deleting=meta.get("deletionTimestamp") is not None,
            )

        self._stream(
            CLUSTER,
            list_fn,
            to_event,
            group=API_GROUP,
            version=API_VERSION,
            plural=PLURAL,
            **kwargs,
        )

    def watch_children(self, resource_type: str, list_fn: Callable[..., Any]) -> None:
        """
        Watch one kind of owned child across all namespaces.

        Args:
            resource_type: Kind name used in logs and events
            list_fn: ``list_*_for_all_namespaces`` method of a typed API
        """

        def to_event(event_type: str, obj: Any) -> Optional[WatchEvent]:
            key = child_cluster_key(obj)
            if key is None:
                return None
            return WatchEvent(
                event_type=event_type,
                resource_type=resource_type,
                name=obj.metadata.name,
                namespace=obj.metadata.namespace,
                cluster_key=key,
            )

        self._stream(resource_type, list_fn, to_event, label_selector=OWNER_NAME_LABEL)

    def child_watches(self) -> dict[str, Callable[..., Any]]:
        """List functions for every child kind the operator owns."""
        core_v1 = self.cluster.core_v1
        return {
            "deployment": self.cluster.apps_v1.list_deployment_for_all_namespaces,
            "service": core_v1.list_service_for_all_namespaces,
            "configmap": core_v1.list_config_map_for_all_namespaces,
            "secret": core_v1.list_secret_for_all_namespaces,
            "persistentvolumeclaim": core_v1.list_persistent_volume_claim_for_all_namespaces,
            "job": self.cluster.batch_v1.list_job_for_all_namespaces,
        }

    def stop(self) -> None:
        """Stop all active watches."""
        self._stopped.set()
        for stream in list(self._streams):
            stream.stop()


class OperatorLoop:
    """
    Dispatches reconcile passes for HonseFarmClusters.

    At most one pass runs per cluster key; events arriving during a pass mark
    the key dirty and trigger exactly one follow-up pass. Passes run in worker
    threads so the event loop only schedules.
    """

    def __init__(
        self,
        cluster: ClusterConnection,
        settings: Settings,
        reconciler: Optional[Reconciler] = None,
    ):
        """
        Initialize operator loop.

        Args:
            cluster: Cluster connection
            settings: Operator settings
            reconciler: Reconciler, built from the connection when None
        """
        self.cluster = cluster
        self.settings = settings
        self.reconciler = reconciler or Reconciler(
            cluster.handlers, cluster.custom_objects, settings
        )
        self.watcher = ClusterWatcher(
            cluster, settings.watch_namespace, settings.watch_timeout_seconds
        )
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, asyncio.Task] = {}
        self._dirty: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._generations: dict[str, Optional[int]] = {}

    @property
    def running(self) -> bool:
        return self._running

    def _handle_event(self, event: WatchEvent) -> None:
        """Hand a watch event from a watch thread to the event loop."""
        if self._loop is not None and self._running:
            self._loop.call_soon_threadsafe(self.dispatch, event)

    def dispatch(self, event: WatchEvent) -> None:
        """
        Turn a watch event into a reconcile request.

        Status-only updates of a cluster do not change its generation and are
        ignored unless the cluster is being deleted; a deleted cluster cancels
        its in-flight pass.
        """
        if not self._running or event.cluster_key is None:
            return

        key = event.cluster_key
        if event.resource_type == CLUSTER:
            if event.event_type == "DELETED":
                self.forget(key)
                return
            if (
                event.event_type == "MODIFIED"
                and not event.deleting
                and self._generations.get(key) == event.generation
            ):
                return
            self._generations[key] = event.generation

        logger.debug(
            f"Received {event.event_type} event for {event.resource_type} "
            f"{event.namespace}/{event.name}"
        )
        self.enqueue(key)

    def enqueue(self, key: str) -> None:
        """Request a reconcile pass for a cluster key."""
        if not self._running:
            return

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        if key in self._active:
            self._dirty.add(key)
            return
        self._active[key] = asyncio.get_running_loop().create_task(self._run(key))

    def forget(self, key: str) -> None:
        """Drop all pending work for a deleted cluster and cancel its pass."""
        logger.info(f"Cluster {key} deleted")
        cancel = self._cancel.get(key)
        if cancel is not None:
            cancel.set()
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._dirty.discard(key)
        self._generations.pop(key, None)

    def _schedule(self, key: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._timers[key] = loop.call_later(delay, self._requeue, key)

    def _requeue(self, key: str) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    async def _run(self, key: str) -> None:
        result: Optional[ReconcileResult] = None
        try:
            while True:
                self._dirty.discard(key)
                result = await self._reconcile_key(key)
                if key not in self._dirty or not self._running:
                    break
        finally:
            self._active.pop(key, None)

        if self._running and result is not None and result.requeue_after:
            self._schedule(key, result.requeue_after)

    async def _reconcile_key(self, key: str) -> ReconcileResult:
        """Run one pass for a key, converting failures into a retry delay."""
        cancel = threading.Event()
        self._cancel[key] = cancel
        try:
            async with self._semaphore:
                return await asyncio.to_thread(self._reconcile_sync, key, cancel)
        except ReconcileCancelled as e:
            logger.info(f"{e}")
            return ReconcileResult()
        except ValidationError as e:
            logger.error(f"Cluster {key} is malformed: {e}")
            return ReconcileResult()
        except (OperatorError, ApiException) as e:
            delay = self.settings.error_requeue_seconds
            logger.error(f"Error reconciling {key}, retrying in {delay}s: {e}")
            return ReconcileResult(requeue_after=delay)
        finally:
            if self._cancel.get(key) is cancel:
                del self._cancel[key]

    def _reconcile_sync(self, key: str, cancel: threading.Event) -> ReconcileResult:
        cluster = self.get_cluster(key)
        if cluster is None:
            logger.debug(f"Cluster {key} no longer exists")
            return ReconcileResult()
        if cluster.metadata.deletion_timestamp is not None:
            logger.debug(f"Cluster {key} is being deleted")
            return self.reconciler.finalize(cluster, cancel)
        return self.reconciler.reconcile(cluster, cancel)

    def get_cluster(self, key: str) -> Optional[HonseFarmCluster]:
        """
        Fetch the current cluster object for a key.

        Returns:
            HonseFarmCluster or None if not found
        """
        namespace, name = key.split("/", 1)
        try:
            obj = self.cluster.custom_objects.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return HonseFarmCluster.from_object(obj)

    def list_cluster_keys(self) -> list[str]:
        """Keys of every HonseFarmCluster in scope."""
        api = self.cluster.custom_objects
        if self.settings.watch_namespace:
            result = api.list_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=self.settings.watch_namespace,
                plural=PLURAL,
            )
        else:
            result = api.list_cluster_custom_object(
                group=API_GROUP, version=API_VERSION, plural=PLURAL
            )
        keys = []
        for item in result.get("items", []):
            meta = item.get("metadata") or {}
            keys.append(f"{meta.get('namespace')}/{meta.get('name')}")
        return keys

    async def _periodic_reconcile(self) -> None:
        """Re-enqueue every cluster at the resync interval."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.periodic_resync_seconds)
                logger.debug("Running periodic resync")
                for key in await asyncio.to_thread(self.list_cluster_keys):
                    self.enqueue(key)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic resync: {e}", exc_info=True)

    async def start(self) -> None:
        """Start watches, the resync timer and the dispatcher."""
        if self._running:
            logger.warning("Operator loop already running")
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_reconciles)
        self.watcher.register_handler(self._handle_event)

        scope = self.settings.watch_namespace or "all namespaces"
        logger.info(f"Starting operator loop for HonseFarmClusters in {scope}")

        self._tasks.append(asyncio.create_task(asyncio.to_thread(self.watcher.watch_clusters)))
        for resource_type, list_fn in self.watcher.child_watches().items():
            self._tasks.append(
                asyncio.create_task(
                    asyncio.to_thread(self.watcher.watch_children, resource_type, list_fn)
                )
            )
        self._tasks.append(asyncio.create_task(self._periodic_reconcile()))

    async def stop(self) -> None:
        """Stop watches and cancel outstanding work."""
        logger.info("Stopping operator loop")
        self._running = False
        self.watcher.stop()

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for cancel in self._cancel.values():
            cancel.set()

        tasks = [*self._tasks, *self._active.values()]
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._active.clear()
