"""Convergence of desired resources against the Kubernetes API.

The engine is the only component that mutates cluster state. For every
desired resource it reads the observed object, creates it when absent, and
otherwise brings the authoritative fields back in line while leaving every
other observed field untouched.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from kubernetes.client import (
    AppsV1Api,
    BatchV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1Deployment,
    V1Service,
)
from kubernetes.client.exceptions import ApiException
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import ApplyError, ReconcileCancelled
from .material import CoreCredentials, Material, generate_material
from .models import API_GROUP, API_VERSION, PLURAL, HonseFarmCluster, HonseFarmClusterStatus
from .resources import (
    DesiredResource,
    ResourceKind,
    owner_reference,
    secret_body,
)

logger = logging.getLogger(__name__)

OWNER_NAME_LABEL = "clusters.honse.farm/name"
OWNER_NAMESPACE_LABEL = "clusters.honse.farm/namespace"


class ApplyOutcome(str, Enum):
    """Result of applying one desired resource."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    EXISTS = "exists"


@dataclass(frozen=True)
class KindHandler:
    """
    API strategy for one resource kind.

    ``sync`` mutates an observed object toward the desired one and reports
    whether anything changed. Kinds without ``sync`` are create-once.
    ``list_owned`` returns the objects matching a label selector in every
    namespace.
    """

    read: Callable[[str, Optional[str]], Any]
    create: Callable[[Optional[str], Any], Any]
    replace: Optional[Callable[[str, Optional[str], Any], Any]] = None
    delete: Optional[Callable[[str, Optional[str]], Any]] = None
    sync: Optional[Callable[[Any, Any], bool]] = None
    list_owned: Optional[Callable[[str], list]] = None


def sync_deployment(observed: V1Deployment, desired: V1Deployment) -> bool:
    """Align replica count, container image and declared container args."""
    changed = False
    if observed.spec.replicas != desired.spec.replicas:
        observed.spec.replicas = desired.spec.replicas
        changed = True

    want = desired.spec.template.spec.containers[0]
    containers = observed.spec.template.spec.containers
    if not containers:
        observed.spec.template.spec.containers = [copy.deepcopy(want)]
        return True

    current = containers[0]
    if current.image != want.image:
        current.image = want.image
        changed = True
    if want.args is not None and current.args != want.args:
        current.args = list(want.args)
        changed = True
    return changed


def _port_key(port: Any) -> tuple:
    target = port.target_port
    return (port.name, port.port, str(target) if target is not None else None)


def sync_service(observed: V1Service, desired: V1Service) -> bool:
    """Align selector and ports; cluster IPs and node ports are left alone."""
    changed = False
    if (observed.spec.selector or {}) != (desired.spec.selector or {}):
        observed.spec.selector = dict(desired.spec.selector or {})
        changed = True

    observed_ports = [_port_key(p) for p in observed.spec.ports or []]
    desired_ports = [_port_key(p) for p in desired.spec.ports or []]
    if observed_ports != desired_ports:
        observed.spec.ports = copy.deepcopy(desired.spec.ports)
        changed = True
    return changed


def sync_config_map(observed: V1ConfigMap, desired: V1ConfigMap) -> bool:
    """Replace the data section wholesale."""
    if (observed.data or {}) == (desired.data or {}):
        return False
    observed.data = dict(desired.data or {})
    return True


def build_handler_registry(
    core_v1: CoreV1Api, apps_v1: AppsV1Api, batch_v1: BatchV1Api
) -> Mapping[ResourceKind, KindHandler]:
    """
    Build the immutable per-kind handler registry.

    Args:
        core_v1: Core API client
        apps_v1: Apps API client
        batch_v1: Batch API client

    Returns:
        Read-only mapping of resource kind to handler
    """
    return MappingProxyType(
        {
            ResourceKind.NAMESPACE: KindHandler(
                read=lambda name, ns: core_v1.read_namespace(name),
                create=lambda ns, body: core_v1.create_namespace(body=body),
            ),
            ResourceKind.SECRET: KindHandler(
                read=lambda name, ns: core_v1.read_namespaced_secret(name, ns),
                create=lambda ns, body: core_v1.create_namespaced_secret(namespace=ns, body=body),
                delete=lambda name, ns: core_v1.delete_namespaced_secret(name, ns),
                list_owned=lambda selector: core_v1.list_secret_for_all_namespaces(
                    label_selector=selector
                ).items,
            ),
            ResourceKind.CONFIG_MAP: KindHandler(
                read=lambda name, ns: core_v1.read_namespaced_config_map(name, ns),
                create=lambda ns, body: core_v1.create_namespaced_config_map(namespace=ns, body=body),
                replace=lambda name, ns, body: core_v1.replace_namespaced_config_map(
                    name=name, namespace=ns, body=body
                ),
                delete=lambda name, ns: core_v1.delete_namespaced_config_map(name, ns),
                list_owned=lambda selector: core_v1.list_config_map_for_all_namespaces(
                    label_selector=selector
                ).items,
                sync=sync_config_map,
            ),
            # Claims are never resized or re-classed once they exist.
            ResourceKind.PERSISTENT_VOLUME_CLAIM: KindHandler(
                read=lambda name, ns: core_v1.read_namespaced_persistent_volume_claim(name, ns),
                create=lambda ns, body: core_v1.create_namespaced_persistent_volume_claim(
                    namespace=ns, body=body
                ),
                delete=lambda name, ns: core_v1.delete_namespaced_persistent_volume_claim(name, ns),
                list_owned=lambda selector: core_v1.list_persistent_volume_claim_for_all_namespaces(
                    label_selector=selector
                ).items,
            ),
            ResourceKind.DEPLOYMENT: KindHandler(
                read=lambda name, ns: apps_v1.read_namespaced_deployment(name, ns),
                create=lambda ns, body: apps_v1.create_namespaced_deployment(namespace=ns, body=body),
                replace=lambda name, ns, body: apps_v1.replace_namespaced_deployment(
                    name=name, namespace=ns, body=body
                ),
                delete=lambda name, ns: apps_v1.delete_namespaced_deployment(
                    name, ns, propagation_policy="Background"
                ),
                list_owned=lambda selector: apps_v1.list_deployment_for_all_namespaces(
                    label_selector=selector
                ).items,
                sync=sync_deployment,
            ),
            ResourceKind.SERVICE: KindHandler(
                read=lambda name, ns: core_v1.read_namespaced_service(name, ns),
                create=lambda ns, body: core_v1.create_namespaced_service(namespace=ns, body=body),
                replace=lambda name, ns, body: core_v1.replace_namespaced_service(
                    name=name, namespace=ns, body=body
                ),
                delete=lambda name, ns: core_v1.delete_namespaced_service(name, ns),
                list_owned=lambda selector: core_v1.list_service_for_all_namespaces(
                    label_selector=selector
                ).items,
                sync=sync_service,
            ),
            ResourceKind.JOB: KindHandler(
                read=lambda name, ns: batch_v1.read_namespaced_job(name, ns),
                create=lambda ns, body: batch_v1.create_namespaced_job(namespace=ns, body=body),
                delete=lambda name, ns: batch_v1.delete_namespaced_job(
                    name, ns, propagation_policy="Background"
                ),
                list_owned=lambda selector: batch_v1.list_job_for_all_namespaces(
                    label_selector=selector
                ).items,
            ),
        }
    )


def _is_throttled(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 429


class ConvergenceEngine:
    """Applies desired resources for one cluster object during one pass."""

    def __init__(
        self,
        handlers: Mapping[ResourceKind, KindHandler],
        owner: HonseFarmCluster,
        custom_objects: Optional[CustomObjectsApi] = None,
        cancel: Optional[threading.Event] = None,
    ):
        """
        Initialize convergence engine.

        Args:
            handlers: Per-kind handler registry
            owner: Parent cluster object children are attached to
            custom_objects: Custom objects API, required for status writes
            cancel: Event signalling that the pass should be abandoned
        """
        self._handlers = handlers
        self.owner = owner
        self._custom_objects = custom_objects
        self._cancel = cancel

    def checkpoint(self) -> None:
        """
        Abandon the pass if cancellation was requested.

        Raises:
            ReconcileCancelled: If the cancel event is set
        """
        if self._cancel is not None and self._cancel.is_set():
            raise ReconcileCancelled(f"reconcile of {self.owner.key} cancelled")

    @retry(
        retry=retry_if_exception(_is_throttled),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self.checkpoint()
        return fn(*args, **kwargs)

    def _error(self, desired: DesiredResource, e: ApiException) -> ApplyError:
        return ApplyError(
            desired.kind.value,
            desired.name,
            desired.namespace,
            e.reason or str(e),
            status=e.status,
        )

    def read(self, desired: DesiredResource) -> Optional[Any]:
        """
        Read the observed object for a descriptor.

        Returns:
            Observed object or None if not found

        Raises:
            ApplyError: On any API failure other than not-found
        """
        handler = self._handlers[desired.kind]
        try:
            return self._call(handler.read, desired.name, desired.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._error(desired, e) from e

    def apply(self, desired: DesiredResource) -> ApplyOutcome:
        """
        Converge one desired resource.

        Args:
            desired: Descriptor to apply

        Returns:
            What was done

        Raises:
            ApplyError: If a control-plane call fails
            MaterialGenerationError: If secret material cannot be generated
            ReconcileCancelled: If the pass was cancelled
        """
        handler = self._handlers[desired.kind]
        observed = self.read(desired)
        if observed is None:
            return self._create(handler, desired)

        if handler.sync is None or handler.replace is None:
            return ApplyOutcome.EXISTS

        if not handler.sync(observed, desired.body):
            return ApplyOutcome.UNCHANGED

        try:
            self._call(handler.replace, desired.name, desired.namespace, observed)
        except ApiException as e:
            raise self._error(desired, e) from e
        logger.info(f"Updated {desired.key}")
        return ApplyOutcome.UPDATED

    def _create(self, handler: KindHandler, desired: DesiredResource) -> ApplyOutcome:
        body = copy.deepcopy(desired.body)
        self._attach_owner(desired, body)
        if desired.material is not None:
            body.string_data = generate_material(desired.material)

        try:
            self._call(handler.create, desired.namespace, body)
        except ApiException as e:
            if e.status == 409:
                logger.info(f"{desired.key} already exists")
                return ApplyOutcome.EXISTS
            raise self._error(desired, e) from e

        logger.info(f"Created {desired.key}")
        return ApplyOutcome.CREATED

    def _attach_owner(self, desired: DesiredResource, body: Any) -> None:
        """Record ownership on a body about to be created."""
        meta = self.owner.metadata
        labels = dict(body.metadata.labels or {})
        labels[OWNER_NAME_LABEL] = meta.name
        if meta.namespace:
            labels[OWNER_NAMESPACE_LABEL] = meta.namespace
        body.metadata.labels = labels

        if not desired.owned:
            return
        # The garbage collector ignores owners from another namespace.
        if desired.namespace != meta.namespace:
            logger.debug(f"{desired.key} is outside {meta.namespace}; no owner reference")
            return
        body.metadata.owner_references = [owner_reference(self.owner)]

    def apply_all(self, resources: list[DesiredResource]) -> dict[str, ApplyOutcome]:
        """
        Apply descriptors in order, stopping at the first failure.

        Returns:
            Outcome per descriptor key
        """
        outcomes: dict[str, ApplyOutcome] = {}
        for desired in resources:
            outcomes[desired.key] = self.apply(desired)
        return outcomes

    def delete(self, desired: DesiredResource) -> bool:
        """
        Delete the observed object of a descriptor.

        Returns:
            True if deleted, False if it was already gone
        """
        handler = self._handlers[desired.kind]
        if handler.delete is None:
            raise ValueError(f"{desired.kind.value} resources cannot be deleted")
        try:
            self._call(handler.delete, desired.name, desired.namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise self._error(desired, e) from e
        logger.info(f"Deleted {desired.key}")
        return True

    def owner_selector(self) -> str:
        """Label selector matching every child created for the owner."""
        meta = self.owner.metadata
        return f"{OWNER_NAME_LABEL}={meta.name},{OWNER_NAMESPACE_LABEL}={meta.namespace}"

    def delete_owned(self) -> int:
        """
        Delete every child labelled with the owner, in any namespace.

        The target namespace itself is left in place.

        Returns:
            Number of objects deleted

        Raises:
            ApplyError: If listing or deleting fails
            ReconcileCancelled: If the pass was cancelled
        """
        selector = self.owner_selector()
        deleted = 0
        for kind, handler in self._handlers.items():
            if handler.list_owned is None or handler.delete is None:
                continue
            try:
                items = self._call(handler.list_owned, selector)
            except ApiException as e:
                raise ApplyError(kind.value, selector, None, e.reason or str(e), e.status) from e
            for obj in items or []:
                meta = obj.metadata
                if self.delete(DesiredResource(kind, meta.name, meta.namespace, obj)):
                    deleted += 1
        return deleted

    def set_finalizers(self, finalizers: list[str]) -> None:
        """
        Replace the finalizers of the owner.

        The patch carries the owner's resource version, so a concurrent change
        fails with a conflict instead of being overwritten.

        Raises:
            ApplyError: If the patch fails
        """
        if self._custom_objects is None:
            raise RuntimeError("Convergence engine has no custom objects API")

        meta = self.owner.metadata
        body: dict[str, Any] = {"metadata": {"finalizers": finalizers}}
        if meta.resource_version:
            body["metadata"]["resourceVersion"] = meta.resource_version
        try:
            self._call(
                self._custom_objects.patch_namespaced_custom_object,
                group=API_GROUP,
                version=API_VERSION,
                namespace=meta.namespace,
                plural=PLURAL,
                name=meta.name,
                body=body,
            )
        except ApiException as e:
            raise ApplyError(self.owner.kind, meta.name, meta.namespace, e.reason or str(e), e.status) from e
        meta.finalizers = list(finalizers)

    def ensure_secret(
        self,
        name: str,
        namespace: str,
        material: Optional[Material] = None,
        secret_type: str = "Opaque",
    ) -> ApplyOutcome:
        """
        Create a secret with generated material unless it already exists.

        Returns:
            ``CREATED`` on the first call, ``EXISTS`` afterwards
        """
        return self.apply(
            DesiredResource(
                ResourceKind.SECRET,
                name,
                namespace,
                secret_body(name, namespace, secret_type),
                material=material or CoreCredentials(),
            )
        )

    def write_status(self, status: HonseFarmClusterStatus) -> None:
        """
        Merge-patch the status subresource of the owner.

        Fields the owner's current status has but ``status`` lacks are
        cleared. A cluster deleted in the meantime is not an error.
        """
        if self._custom_objects is None:
            raise RuntimeError("Convergence engine has no custom objects API")

        meta = self.owner.metadata
        try:
            self._call(
                self._custom_objects.patch_namespaced_custom_object_status,
                group=API_GROUP,
                version=API_VERSION,
                namespace=meta.namespace,
                plural=PLURAL,
                name=meta.name,
                body={"status": status.patch_body(self.owner.status)},
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{self.owner.key} disappeared before its status was written")
                return
            raise ApplyError(self.owner.kind, meta.name, meta.namespace, e.reason or str(e), e.status) from e
