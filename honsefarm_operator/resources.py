"""Desired resource descriptors and Kubernetes object builders."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1Job,
    V1JobSpec,
    V1LabelSelector,
    V1Namespace,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimVolumeSource,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Secret,
    V1SecretVolumeSource,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
    V1VolumeResourceRequirements,
)

from .appsettings import Component
from .material import Material
from .models import HonseFarmCluster

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "honsefarm-operator"
NAME_LABEL = "app.kubernetes.io/name"
COMPONENT_LABEL = "honsefarm-component"
SHARD_LABEL = "honsefarm-shard"
PVC_LABEL = "honsefarm-pvc"
CLUSTER_LABEL = "honsefarm-cluster"

BUILD_ID_ANNOTATION = "clusters.honse.farm/build-id"

COMPONENT_PORTS = {
    Component.SERVER: 5000,
    Component.ADMIN_PANEL: 5000,
    Component.MAIN_FILESERVER: 5001,
    Component.SHARD: 5002,
}


def deployment_name(component: Component, shard: Optional[str] = None) -> str:
    if component == Component.SHARD:
        return f"honsefarm-shard-{shard}"
    return f"honsefarm-{component.value}"


def service_name(component: Component, shard: Optional[str] = None) -> str:
    if component == Component.SHARD:
        return f"shard-{shard}-svc"
    return f"{component.value}-svc"


def claim_name(component: Component, shard: Optional[str] = None) -> str:
    if component == Component.SHARD:
        return f"shard-{shard}-data"
    return f"{component.value}-data"


def build_job_name(cluster_name: str) -> str:
    """One build job name per cluster, independent of the build identifier."""
    return f"{cluster_name}-build"


class ResourceKind(str, Enum):
    """Closed set of child resource kinds managed by the operator."""

    NAMESPACE = "Namespace"
    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    JOB = "Job"


@dataclass(frozen=True)
class DesiredResource:
    """
    In-memory rendering of one child resource.

    Descriptors are recomputed on every reconcile and never stored.
    ``material`` describes secret data to generate when (and only when) the
    secret has to be created, which keeps rendering free of randomness.
    """

    kind: ResourceKind
    name: str
    namespace: Optional[str]
    body: Any
    owned: bool = True
    material: Optional[Material] = None
    component: Optional[str] = None
    requires_build: bool = False

    @property
    def key(self) -> str:
        """Human readable identity for logs and errors."""
        if self.namespace:
            return f"{self.kind.value} {self.namespace}/{self.name}"
        return f"{self.kind.value} {self.name}"


def managed_labels(**extra: str) -> dict[str, str]:
    """Labels every operator-managed object carries."""
    return {MANAGED_BY_LABEL: MANAGED_BY, **extra}


def owner_reference(parent: HonseFarmCluster) -> V1OwnerReference:
    """
    Controller reference pointing at the parent cluster object.

    Recorded once at creation time so that the platform garbage-collects the
    child together with its parent.
    """
    return V1OwnerReference(
        api_version=parent.api_version,
        kind=parent.kind,
        name=parent.metadata.name,
        uid=parent.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def namespace_body(name: str) -> V1Namespace:
    return V1Namespace(
        api_version="v1",
        kind="Namespace",
        metadata=V1ObjectMeta(name=name, labels=managed_labels()),
    )


def secret_body(
    name: str, namespace: str, secret_type: str = "Opaque"
) -> V1Secret:
    """Secret shell; data is filled in from material on creation."""
    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=managed_labels()),
        type=secret_type,
    )


def config_map_body(
    name: str, namespace: str, data: dict[str, str], labels: dict[str, str]
) -> V1ConfigMap:
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        data=data,
    )


def pvc_body(
    name: str,
    namespace: str,
    size: str,
    storage_class_name: Optional[str] = None,
    access_modes: Optional[list[str]] = None,
) -> V1PersistentVolumeClaim:
    """
    Build a persistent volume claim.

    Args:
        name: Claim name
        namespace: Kubernetes namespace
        size: Requested storage, e.g. "10Gi"
        storage_class_name: Storage class, cluster default when None
        access_modes: Access modes, ReadWriteOnce when empty

    Returns:
        V1PersistentVolumeClaim
    """
    return V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=managed_labels(**{PVC_LABEL: name}),
        ),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=list(access_modes) if access_modes else ["ReadWriteOnce"],
            resources=V1VolumeResourceRequirements(requests={"storage": size}),
            storage_class_name=storage_class_name or None,
        ),
    )


def workload_body(
    name: str,
    namespace: str,
    container_name: str,
    image: str,
    replicas: int,
    labels: dict[str, str],
    container_port: Optional[int] = None,
    args: Optional[list[str]] = None,
    volumes: Optional[list[V1Volume]] = None,
    volume_mounts: Optional[list[V1VolumeMount]] = None,
) -> V1Deployment:
    """
    Build a single-container deployment.

    Args:
        name: Deployment name
        namespace: Kubernetes namespace
        container_name: Name of the only container
        image: Container image reference
        replicas: Replica count
        labels: Labels used on the object, pod template and selector
        container_port: Port exposed by the container
        args: Container arguments
        volumes: Pod volumes
        volume_mounts: Container volume mounts

    Returns:
        V1Deployment
    """
    container = V1Container(
        name=container_name,
        image=image,
        args=args,
        ports=[V1ContainerPort(container_port=container_port)] if container_port else None,
        volume_mounts=volume_mounts,
    )

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels)),
        spec=V1DeploymentSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels=dict(labels)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=dict(labels)),
                spec=V1PodSpec(containers=[container], volumes=volumes),
            ),
        ),
    )


def config_volume(config_map_name: str, volume_name: str = "config") -> V1Volume:
    return V1Volume(
        name=volume_name,
        config_map=V1ConfigMapVolumeSource(name=config_map_name),
    )


def claim_volume(claim_name: str, volume_name: str = "data") -> V1Volume:
    return V1Volume(
        name=volume_name,
        persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(claim_name=claim_name),
    )


def secret_volume(secret_name: str, volume_name: str) -> V1Volume:
    return V1Volume(name=volume_name, secret=V1SecretVolumeSource(secret_name=secret_name))


def service_body(
    name: str,
    namespace: str,
    selector: dict[str, str],
    port: int,
    port_name: str = "http",
) -> V1Service:
    """Build a ClusterIP service forwarding one port to the selected pods."""
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=managed_labels(**{NAME_LABEL: name}),
        ),
        spec=V1ServiceSpec(
            selector=dict(selector),
            ports=[V1ServicePort(name=port_name, port=port, target_port=port)],
        ),
    )


def job_body(
    name: str,
    namespace: str,
    image: str,
    script: str,
    labels: dict[str, str],
    annotations: dict[str, str],
    backoff_limit: int = 0,
    env: Optional[dict[str, str]] = None,
    volumes: Optional[list[V1Volume]] = None,
    volume_mounts: Optional[list[V1VolumeMount]] = None,
    privileged: bool = False,
) -> V1Job:
    """
    Build a one-shot job running a shell script.

    Args:
        name: Job name
        namespace: Kubernetes namespace
        image: Executor image, must provide ``/bin/sh``
        script: Shell script passed to ``sh -c``
        labels: Labels for the job and pod template
        annotations: Job annotations
        backoff_limit: Pod retries before the job is marked failed
        env: Container environment
        volumes: Pod volumes
        volume_mounts: Container volume mounts
        privileged: Run the container privileged

    Returns:
        V1Job
    """
    container = V1Container(
        name=name,
        image=image,
        command=["/bin/sh", "-c", script],
        env=[V1EnvVar(name=k, value=v) for k, v in sorted((env or {}).items())] or None,
        volume_mounts=volume_mounts,
        security_context=V1SecurityContext(privileged=True) if privileged else None,
    )

    return V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=dict(labels),
            annotations=dict(annotations),
        ),
        spec=V1JobSpec(
            backoff_limit=backoff_limit,
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=dict(labels)),
                spec=V1PodSpec(
                    containers=[container],
                    restart_policy="Never",
                    volumes=volumes,
                ),
            ),
        ),
    )
