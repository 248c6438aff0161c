"""Desired-state rendering for a HonseFarmCluster."""

import logging
from typing import Optional

from kubernetes.client import V1VolumeMount

from .appsettings import (
    CONFIG_MAP_NAME,
    Component,
    build_bundle,
    enabled_components,
    enabled_shards,
)
from .config import Settings
from .errors import ConfigurationError
from .material import CORE_SECRET_NAME, TLS_SECRET_NAME, CoreCredentials, TLSMaterial
from .models import ComponentSpec, HonseFarmCluster, HonseFarmClusterSpec
from .pipeline import built_image, render_build_job, validate_build
from .resources import (
    COMPONENT_LABEL,
    COMPONENT_PORTS,
    NAME_LABEL,
    SHARD_LABEL,
    DesiredResource,
    ResourceKind,
    claim_name,
    claim_volume,
    config_map_body,
    config_volume,
    deployment_name,
    managed_labels,
    namespace_body,
    pvc_body,
    secret_body,
    service_body,
    service_name,
    workload_body,
)
from .tunnel import render_tunnel

logger = logging.getLogger(__name__)

CONFIG_MOUNT_PATH = "/app/config"
DATA_MOUNT_PATH = "/data"

_IMAGE_FIELDS = {
    Component.SERVER: ("server", "spec.images.server"),
    Component.ADMIN_PANEL: ("admin_panel", "spec.images.adminPanel"),
    Component.MAIN_FILESERVER: ("main_fileserver", "spec.images.mainFileserver"),
    Component.SHARD: ("shard_fileserver", "spec.images.shardFileserver"),
}

SELF_SIGNED_MODES = ("", "selfsigned", "self-signed")


def resolve_image(
    spec: HonseFarmClusterSpec, component: Component, build_id: Optional[str] = None
) -> tuple[str, bool]:
    """
    Resolve the image reference of an enabled component.

    In build mode a component declared in ``spec.build.components`` runs the
    image the build pipeline publishes; otherwise the pre-built reference from
    ``spec.images`` is used. ``build_id`` selects the tag of a build other
    than the one the spec currently requests.

    Returns:
        Tuple of (image reference, whether the image comes from the build)

    Raises:
        ConfigurationError: If no image can be determined
    """
    if spec.build_mode:
        image = built_image(spec, component.value, build_id)
        if image is not None:
            return image, True

    attr, path = _IMAGE_FIELDS[component]
    image = getattr(spec.images, attr, None) if spec.images else None
    if not image:
        raise ConfigurationError(f"{path} must be set")
    return image, False


def component_labels(component: Component, shard: Optional[str] = None) -> dict[str, str]:
    labels = managed_labels(**{COMPONENT_LABEL: component.value})
    if shard:
        labels[SHARD_LABEL] = shard
    return labels


def _render_workload(
    spec: HonseFarmClusterSpec,
    component: Component,
    comp: ComponentSpec,
    image: str,
    from_build: bool,
    shard: Optional[str] = None,
) -> list[DesiredResource]:
    """Optional claim plus deployment for one component or shard."""
    ns = spec.target_namespace
    labels = component_labels(component, shard)
    rendered: list[DesiredResource] = []

    volumes = [config_volume(CONFIG_MAP_NAME)]
    mounts = [V1VolumeMount(name="config", mount_path=CONFIG_MOUNT_PATH, read_only=True)]

    if comp.storage is not None and comp.storage.size:
        pvc = claim_name(component, shard)
        rendered.append(
            DesiredResource(
                ResourceKind.PERSISTENT_VOLUME_CLAIM,
                pvc,
                ns,
                pvc_body(
                    pvc,
                    ns,
                    comp.storage.size,
                    comp.storage.storage_class_name,
                    comp.storage.access_modes,
                ),
                component=component.value,
            )
        )
        volumes.append(claim_volume(pvc))
        mounts.append(V1VolumeMount(name="data", mount_path=DATA_MOUNT_PATH))

    name = deployment_name(component, shard)
    rendered.append(
        DesiredResource(
            ResourceKind.DEPLOYMENT,
            name,
            ns,
            workload_body(
                name=name,
                namespace=ns,
                container_name=component.value,
                image=image,
                replicas=comp.replicas if comp.replicas is not None else 1,
                labels=labels,
                container_port=COMPONENT_PORTS[component],
                volumes=volumes,
                volume_mounts=mounts,
            ),
            component=component.value,
            requires_build=from_build,
        )
    )
    return rendered


def _render_service(
    spec: HonseFarmClusterSpec, component: Component, shard: Optional[str] = None
) -> DesiredResource:
    name = service_name(component, shard)
    selector = {COMPONENT_LABEL: component.value}
    if shard:
        selector[SHARD_LABEL] = shard
    return DesiredResource(
        ResourceKind.SERVICE,
        name,
        spec.target_namespace,
        service_body(name, spec.target_namespace, selector, COMPONENT_PORTS[component]),
        component=component.value,
    )


def _component_spec(spec: HonseFarmClusterSpec, component: Component) -> ComponentSpec:
    comps = spec.components
    if component == Component.SERVER:
        return comps.server
    if component == Component.ADMIN_PANEL:
        return comps.admin_panel
    return comps.fileservers.main


def _render_tls(spec: HonseFarmClusterSpec) -> Optional[DesiredResource]:
    certs = spec.certificates
    if certs is None or (not certs.dns_names and not certs.common_name):
        return None
    if (certs.mode or "").lower() not in SELF_SIGNED_MODES:
        logger.debug(f"Certificate mode {certs.mode!r} is not self-signed; no TLS secret rendered")
        return None

    ns = spec.target_namespace
    return DesiredResource(
        ResourceKind.SECRET,
        TLS_SECRET_NAME,
        ns,
        secret_body(TLS_SECRET_NAME, ns, secret_type="kubernetes.io/tls"),
        material=TLSMaterial(
            common_name=certs.common_name or "",
            dns_names=tuple(certs.dns_names),
        ),
    )


def render(
    cluster: HonseFarmCluster,
    settings: Optional[Settings] = None,
    build_id: Optional[str] = None,
) -> list[DesiredResource]:
    """
    Render every child resource the cluster should have.

    Pure and deterministic: rendering the same cluster twice yields equal
    descriptors. Absent or disabled components render nothing.

    Args:
        cluster: HonseFarmCluster object
        settings: Operator settings (images and build defaults)
        build_id: Build whose images the built components run, defaults to
            the build identifier of the spec

    Returns:
        Descriptors in apply order: namespace, secrets, configuration bundle,
        claims and workloads, services, tunnel, build job

    Raises:
        ConfigurationError: If an enabled component has no image or build mode
            is missing required fields
    """
    settings = settings or Settings()
    spec = cluster.spec
    ns = spec.target_namespace

    if spec.build_mode:
        validate_build(spec)

    # Resolve every image up front so a configuration error applies nothing.
    components = enabled_components(spec)
    shards = enabled_shards(spec)
    images = {component: resolve_image(spec, component, build_id) for component in components}
    shard_image = resolve_image(spec, Component.SHARD, build_id) if shards else None

    desired: list[DesiredResource] = [
        DesiredResource(ResourceKind.NAMESPACE, ns, None, namespace_body(ns), owned=False),
        DesiredResource(
            ResourceKind.SECRET,
            CORE_SECRET_NAME,
            ns,
            secret_body(CORE_SECRET_NAME, ns),
            material=CoreCredentials(),
        ),
    ]

    tls = _render_tls(spec)
    if tls is not None:
        desired.append(tls)

    desired.append(
        DesiredResource(
            ResourceKind.CONFIG_MAP,
            CONFIG_MAP_NAME,
            ns,
            config_map_body(
                CONFIG_MAP_NAME,
                ns,
                build_bundle(spec),
                managed_labels(**{NAME_LABEL: CONFIG_MAP_NAME}),
            ),
        )
    )

    for component in components:
        image, from_build = images[component]
        desired.extend(
            _render_workload(spec, component, _component_spec(spec, component), image, from_build)
        )
    for shard in shards:
        image, from_build = shard_image
        desired.extend(
            _render_workload(spec, Component.SHARD, shard, image, from_build, shard=shard.name)
        )

    for component in components:
        desired.append(_render_service(spec, component))
    for shard in shards:
        desired.append(_render_service(spec, Component.SHARD, shard.name))

    desired.extend(render_tunnel(spec, settings.cloudflared_image))

    if spec.build_mode:
        desired.append(render_build_job(cluster, settings))

    logger.debug(f"Rendered {len(desired)} resources for {cluster.key}")
    return desired
