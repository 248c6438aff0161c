"""Cloudflare tunnel exposure resources."""

import logging
from typing import Optional

from kubernetes.client import V1VolumeMount

from .appsettings import Component
from .models import CloudflaredIngressRule, CloudflaredSpec, HonseFarmClusterSpec
from .resources import (
    COMPONENT_PORTS,
    DesiredResource,
    ResourceKind,
    config_map_body,
    config_volume,
    secret_volume,
    service_name,
    workload_body,
)

logger = logging.getLogger(__name__)

CONFIG_MAP_NAME = "cloudflared-config"
DEPLOYMENT_NAME = "cloudflared"
DEFAULT_CREDENTIALS_SECRET = "cloudflared-credentials"
CREDENTIALS_FILE = "/etc/cloudflared/creds/credentials.json"

_COMPONENT_ALIASES = {
    "server": Component.SERVER,
    "adminpanel": Component.ADMIN_PANEL,
    "admin-panel": Component.ADMIN_PANEL,
    "main-fileserver": Component.MAIN_FILESERVER,
    "mainfileserver": Component.MAIN_FILESERVER,
    "shard": Component.SHARD,
    "shard-fileserver": Component.SHARD,
}


def tunnel_enabled(spec: HonseFarmClusterSpec) -> bool:
    return spec.cloudflared is not None and spec.cloudflared.enabled


def resolve_backend(rule: CloudflaredIngressRule, namespace: str) -> Optional[str]:
    """
    Resolve an ingress rule to an in-cluster service URL.

    Rules either name a service explicitly or reference one of the operator's
    own components (and shard), in which case the operator's service name and
    port in the target namespace are used.

    Returns:
        ``http://<svc>.<ns>.svc.cluster.local:<port>`` or None if incomplete
    """
    svc_name = rule.service_name
    svc_namespace = rule.service_namespace
    svc_port = rule.service_port

    if not svc_name and rule.component:
        component = _COMPONENT_ALIASES.get(rule.component.lower())
        if component is None or (component == Component.SHARD and not rule.shard_name):
            return None
        svc_name = service_name(component, rule.shard_name)
        svc_namespace = svc_namespace or namespace
        svc_port = svc_port or COMPONENT_PORTS[component]

    if not svc_name or not svc_namespace or not svc_port:
        return None
    return f"http://{svc_name}.{svc_namespace}.svc.cluster.local:{svc_port}"


def render_config(cf: CloudflaredSpec, namespace: str) -> str:
    """
    Render the line-oriented cloudflared ``config.yaml``.

    Args:
        cf: Tunnel specification
        namespace: Target namespace for component-based rules

    Returns:
        Config document text
    """
    lines = [
        f"tunnel: {cf.tunnel_id or ''}",
        f"credentials-file: {CREDENTIALS_FILE}",
        "ingress:",
    ]

    for rule in cf.ingress:
        if rule.special_service:
            lines.append(f"  - service: {rule.special_service}")
            continue
        backend = resolve_backend(rule, namespace)
        if not rule.hostname or backend is None:
            logger.debug(f"Skipping incomplete tunnel ingress rule for {rule.hostname!r}")
            continue
        lines.append(f"  - hostname: {rule.hostname}")
        lines.append(f"    service: {backend}")

    return "\n".join(lines)


def render_tunnel(
    spec: HonseFarmClusterSpec, default_image: str
) -> list[DesiredResource]:
    """
    Render the tunnel config map and deployment.

    Args:
        spec: Cluster specification
        default_image: Image used when the spec names none

    Returns:
        Descriptors, empty when the tunnel is not enabled
    """
    if not tunnel_enabled(spec):
        return []

    cf = spec.cloudflared
    ns = spec.target_namespace
    labels = {"app": "cloudflared"}

    config_map = config_map_body(
        CONFIG_MAP_NAME, ns, {"config.yaml": render_config(cf, ns)}, labels
    )

    credentials = DEFAULT_CREDENTIALS_SECRET
    if cf.credentials_secret_ref and cf.credentials_secret_ref.name:
        credentials = cf.credentials_secret_ref.name

    deployment = workload_body(
        name=DEPLOYMENT_NAME,
        namespace=ns,
        container_name="cloudflared",
        image=cf.image or default_image,
        replicas=1,
        labels=labels,
        args=["tunnel", "run", *cf.extra_args],
        volumes=[
            config_volume(CONFIG_MAP_NAME),
            secret_volume(credentials, "credentials"),
        ],
        volume_mounts=[
            V1VolumeMount(name="config", mount_path="/etc/cloudflared"),
            V1VolumeMount(name="credentials", mount_path="/etc/cloudflared/creds", read_only=True),
        ],
    )

    return [
        DesiredResource(ResourceKind.CONFIG_MAP, CONFIG_MAP_NAME, ns, config_map, component="cloudflared"),
        DesiredResource(ResourceKind.DEPLOYMENT, DEPLOYMENT_NAME, ns, deployment, component="cloudflared"),
    ]
