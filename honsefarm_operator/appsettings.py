"""Application configuration documents for HonseFarm components.

Each component reads an ``appsettings.Production.json`` document. The operator
generates these from the cluster's global settings plus fixed per-component
defaults, then lets the user replace top-level keys through the component's
``configOverrides``. All documents end up in a single ConfigMap.

Keys in the bundle:

- ``server.appsettings.Production.json``
- ``adminpanel.appsettings.Production.json``
- ``main-fileserver.appsettings.Production.json``
- ``<shard-name>.appsettings.Production.json``
"""

import json
import logging
from enum import Enum
from typing import Any, Optional

from .models import HonseFarmClusterSpec, ShardSpec

logger = logging.getLogger(__name__)

CONFIG_MAP_NAME = "honsefarm-config"
DOCUMENT_SUFFIX = ".appsettings.Production.json"

MAIN_SERVER_ADDRESS = "http://server:5000"
MAIN_FILESERVER_ADDRESS = "http://main-fileserver:5001"
SERVER_ID = "Forest"


class Component(str, Enum):
    """Component kinds with a configuration document."""

    SERVER = "server"
    ADMIN_PANEL = "adminpanel"
    MAIN_FILESERVER = "main-fileserver"
    SHARD = "shard-fileserver"


def merge_override(base: dict[str, Any], override: Any) -> dict[str, Any]:
    """
    Shallow-merge an override document onto generated defaults.

    Only top-level keys are replaced: a nested object in the override replaces
    the generated nested object wholesale. Anything that is not a key/value
    object (arrays, scalars, unparsable JSON text) is ignored.

    Args:
        base: Generated document
        override: User override, a mapping or JSON text

    Returns:
        New merged document; ``base`` is not modified
    """
    if override is None or override == "" or override == {}:
        return base

    if isinstance(override, (str, bytes)):
        try:
            override = json.loads(override)
        except ValueError:
            logger.debug("Ignoring unparsable config override")
            return base

    if not isinstance(override, dict):
        logger.debug(f"Ignoring non-object config override ({type(override).__name__})")
        return base

    merged = dict(base)
    for key, value in override.items():
        merged[key] = value
    return merged


def _logging_section(spec: HonseFarmClusterSpec, component: Component) -> Optional[dict]:
    lg = spec.global_.logging if spec.global_ else None
    if lg is None:
        return None

    levels: dict[str, Any] = {}
    if lg.default_level:
        levels["Default"] = lg.default_level
    if component == Component.ADMIN_PANEL:
        if lg.asp_net_core_level:
            levels["MicrosoftAspNetCore"] = lg.asp_net_core_level
    else:
        if lg.microsoft_level:
            levels["Microsoft"] = lg.microsoft_level
        if component == Component.SERVER and lg.asp_net_core_level:
            levels["MicrosoftHostingLifetime"] = lg.asp_net_core_level

    if not levels:
        return None
    return {"LogLevel": levels}


def _connection_strings(spec: HonseFarmClusterSpec) -> Optional[dict]:
    db = spec.global_.database if spec.global_ else None
    if db is None:
        return None
    return {
        "Database": (
            f"Host={db.host};Database={db.name};"
            f"Username={db.username};Password={db.password}"
        )
    }


def _kestrel(port: int) -> dict:
    return {"Endpoints": {"Http": {"Url": f"http://*:{port}"}}}


def _common_honsefarm(
    spec: HonseFarmClusterSpec, with_pool: bool, with_telemetry: bool
) -> dict[str, Any]:
    """JWT, Redis and telemetry keys shared by the HonseFarm sections."""
    hf: dict[str, Any] = {}
    settings = spec.global_
    if settings is None:
        return hf

    if settings.jwt and settings.jwt.secret:
        hf["Jwt"] = settings.jwt.secret
    if settings.redis:
        hf["RedisConnectionString"] = settings.redis.connection_string
        if with_pool and settings.redis.pool:
            hf["RedisPool"] = settings.redis.pool
    if with_telemetry and settings.telemetry:
        t = settings.telemetry
        if t.logs_endpoint:
            hf["OpenTelemetryLogsEndpoint"] = t.logs_endpoint
        hf["OpenTelemetryAnalyticsOptIn"] = t.analytics_opt_in
        if t.analytics_connection_string:
            hf["OpenTelemetryAnalyticsConnectionString"] = t.analytics_connection_string
    return hf


def _federation(spec: HonseFarmClusterSpec) -> Optional[dict]:
    f = spec.global_.federation if spec.global_ else None
    if f is None:
        return None

    fed: dict[str, Any] = {}
    for key, value in (
        ("ServerId", f.server_id),
        ("ServerName", f.server_name),
        ("ServerDescription", f.server_description),
        ("ServerVersion", f.server_version),
        ("ServerLocation", f.server_location),
        ("ServerDiscordLink", f.server_discord_link),
        ("ServerType", f.server_type),
        ("ServerJoinSecret", f.server_join_secret),
        ("ServerBaseUrl", f.server_base_url),
    ):
        if value:
            fed[key] = value
    fed["UseDnsBootstrap"] = f.use_dns_bootstrap
    if f.dns_bootstrap_hostname:
        fed["DnsBootstrapHostname"] = f.dns_bootstrap_hostname
    if f.group_uid_prefix:
        fed["GroupUidPrefix"] = f.group_uid_prefix
    if f.role:
        fed["Role"] = f.role
    return fed


def _with_common(spec: HonseFarmClusterSpec, component: Component) -> dict[str, Any]:
    cfg: dict[str, Any] = {}
    logging_section = _logging_section(spec, component)
    if logging_section:
        cfg["Logging"] = logging_section
    connection_strings = _connection_strings(spec)
    if connection_strings:
        cfg["ConnectionStrings"] = connection_strings
    return cfg


def build_server_config(spec: HonseFarmClusterSpec) -> dict[str, Any]:
    """Generated defaults for the core server."""
    cfg = _with_common(spec, Component.SERVER)
    cfg["AllowedHosts"] = "*"

    federation = _federation(spec)
    if federation is not None:
        cfg["Federation"] = federation

    hf = _common_honsefarm(spec, with_pool=True, with_telemetry=True)
    hf["DbContextPoolSize"] = 2000
    hf["MetricsPort"] = 4981
    hf["ShardName"] = "main-server"
    if spec.hosts and spec.hosts.cdn:
        hf["CdnFullUrl"] = f"https://{spec.hosts.cdn}/"
    cfg["HonseFarm"] = hf

    cfg["Kestrel"] = _kestrel(5000)
    return cfg


def build_admin_config(spec: HonseFarmClusterSpec) -> dict[str, Any]:
    """Generated defaults for the admin panel."""
    cfg = _with_common(spec, Component.ADMIN_PANEL)

    hf = _common_honsefarm(spec, with_pool=True, with_telemetry=False)
    if spec.hosts and spec.hosts.server:
        hf["MainServerUrl"] = f"https://{spec.hosts.server}"
    hf["ConfigFilesPath"] = "/app/config"
    cfg["HonseFarm"] = hf

    cfg["AllowedHosts"] = "*"
    return cfg


def build_main_fileserver_config(spec: HonseFarmClusterSpec) -> dict[str, Any]:
    """Generated defaults for the main file server."""
    cfg = _with_common(spec, Component.MAIN_FILESERVER)

    hf = _common_honsefarm(spec, with_pool=False, with_telemetry=True)
    hf["FileServerRole"] = "Main"
    hf["ServerId"] = SERVER_ID
    if spec.hosts and spec.hosts.cdn:
        hf["FileServerName"] = spec.hosts.cdn
        hf["ServerUri"] = f"https://{spec.hosts.cdn}"
        hf["CdnFullUrl"] = f"https://{spec.hosts.cdn}"
    hf["CacheDirectory"] = "/cache"
    hf["CacheSizeHardLimitInGiB"] = 10
    hf["UseColdStorage"] = False
    hf["DownloadQueueSize"] = 100
    hf["DownloadQueueReleaseSeconds"] = 300
    hf["DbContextPoolSize"] = 512
    hf["MainServerAddress"] = MAIN_SERVER_ADDRESS
    hf["MetricsPort"] = 4982
    cfg["HonseFarm"] = hf

    cfg["Kestrel"] = _kestrel(5001)
    return cfg


def shard_host(spec: HonseFarmClusterSpec, shard_name: str) -> str:
    """Public host of a shard, falling back to the shard name."""
    if spec.hosts:
        for hs in spec.hosts.shards:
            if hs.name == shard_name and hs.host:
                return hs.host
    return shard_name


def build_shard_config(spec: HonseFarmClusterSpec, shard: ShardSpec) -> dict[str, Any]:
    """Generated defaults for a shard file server."""
    cfg = _with_common(spec, Component.SHARD)
    host = shard_host(spec, shard.name)

    hf = _common_honsefarm(spec, with_pool=False, with_telemetry=True)
    hf["FileServerRole"] = "Shard"
    hf["ServerId"] = SERVER_ID
    hf["FileServerName"] = host
    hf["ServerUri"] = f"https://{host}"
    hf["CacheDirectory"] = "/cache"
    hf["CacheSizeHardLimitInGiB"] = 100
    hf["UseColdStorage"] = False
    hf["ColdStorageDirectory"] = None
    hf["ColdStorageSizeHardLimitInGiB"] = 0
    hf["ColdStorageUnusedFileRetentionPeriodInDays"] = 90
    hf["UnusedFileRetentionPeriodInDays"] = 7
    hf["DownloadQueueSize"] = 100
    hf["DownloadQueueReleaseSeconds"] = 300
    hf["DbContextPoolSize"] = 512
    hf["MainServerAddress"] = MAIN_SERVER_ADDRESS
    hf["MainFileServerAddress"] = MAIN_FILESERVER_ADDRESS
    hf["DistributionFileServerAddress"] = MAIN_FILESERVER_ADDRESS
    hf["MetricsPort"] = 4983
    # Stub shard layout; replace via configOverrides.
    hf["ShardConfiguration"] = {
        "Continents": ["*"],
        "FileMatch": "^[0-9a-fA-F]",
        "RegionUris": {"Default": f"https://{host}"},
    }
    cfg["HonseFarm"] = hf

    cfg["Kestrel"] = _kestrel(5002)
    return cfg


def render_document(
    spec: HonseFarmClusterSpec,
    component: Component,
    shard: Optional[ShardSpec] = None,
) -> dict[str, Any]:
    """
    Render the configuration document of one component.

    Args:
        spec: Cluster specification
        component: Component kind
        shard: Shard specification, required for ``Component.SHARD``

    Returns:
        Configuration document with the component's overrides applied

    Raises:
        ValueError: If a shard document is requested without a shard
    """
    components = spec.components
    if component == Component.SERVER:
        doc = build_server_config(spec)
        comp = components.server if components else None
    elif component == Component.ADMIN_PANEL:
        doc = build_admin_config(spec)
        comp = components.admin_panel if components else None
    elif component == Component.MAIN_FILESERVER:
        doc = build_main_fileserver_config(spec)
        fileservers = components.fileservers if components else None
        comp = fileservers.main if fileservers else None
    else:
        if shard is None:
            raise ValueError("shard document requested without a shard")
        doc = build_shard_config(spec, shard)
        comp = shard

    if comp is None:
        return doc
    return merge_override(doc, comp.config_overrides)


def serialize(document: dict[str, Any]) -> str:
    """Stable compact JSON text for a configuration document."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def document_key(name: str) -> str:
    """ConfigMap key for a component or shard name."""
    return f"{name}{DOCUMENT_SUFFIX}"


def enabled_shards(spec: HonseFarmClusterSpec) -> list[ShardSpec]:
    """Shards declared and enabled in the spec, in declaration order."""
    if not spec.components or not spec.components.fileservers:
        return []
    return [s for s in spec.components.fileservers.shards if s.enabled]


def enabled_components(spec: HonseFarmClusterSpec) -> list[Component]:
    """Non-shard components whose sub-spec is present and enabled."""
    comps = spec.components
    if comps is None:
        return []

    result = []
    if comps.server is not None and comps.server.enabled:
        result.append(Component.SERVER)
    if comps.admin_panel is not None and comps.admin_panel.enabled:
        result.append(Component.ADMIN_PANEL)
    if (
        comps.fileservers is not None
        and comps.fileservers.main is not None
        and comps.fileservers.main.enabled
    ):
        result.append(Component.MAIN_FILESERVER)
    return result


def build_bundle(spec: HonseFarmClusterSpec) -> dict[str, str]:
    """
    Render all enabled components' documents as ConfigMap data.

    Args:
        spec: Cluster specification

    Returns:
        Mapping of ``<name>.appsettings.Production.json`` to JSON text
    """
    data: dict[str, str] = {}
    for component in enabled_components(spec):
        data[document_key(component.value)] = serialize(render_document(spec, component))
    for shard in enabled_shards(spec):
        data[document_key(shard.name)] = serialize(
            render_document(spec, Component.SHARD, shard)
        )
    return data
