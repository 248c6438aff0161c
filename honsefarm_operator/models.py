"""Custom resource models for the HonseFarm operator."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

API_GROUP = "clusters.honse.farm"
API_VERSION = "v1alpha1"
KIND = "HonseFarmCluster"
PLURAL = "honsefarmclusters"
FINALIZER = f"{API_GROUP}/cleanup"

DEFAULT_NAMESPACE = "honsefarm"


class ClusterPhase(str, Enum):
    """Lifecycle phase of a HonseFarmCluster."""

    PENDING = "Pending"
    BUILDING = "Building"
    BUILT = "Built"
    BUILD_FAILED = "BuildFailed"
    READY = "Ready"


class DeploymentMode(str, Enum):
    """How component images are obtained."""

    PREBUILT = "Prebuilt"
    BUILD = "Build"


class CRModel(BaseModel):
    """Base model parsing camelCase custom resource fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# Spec: sources, build and registry


class SourceSpec(CRModel):
    """Source repository used in build mode."""

    repo_url: str
    ref: Optional[str] = None
    context_base_dir: Optional[str] = None


class BuildComponentSpec(CRModel):
    """One image to build from the source repository."""

    name: str
    context_dir: str = "."
    dockerfile: str = "Dockerfile"


class BuildSpec(CRModel):
    """Build pipeline definition."""

    strategy: Optional[str] = None
    components: list[BuildComponentSpec] = Field(default_factory=list)


class RegistrySpec(CRModel):
    """Container registry that receives built images."""

    host: str
    repository_prefix: Optional[str] = None
    insecure: bool = False
    secret_ref: Optional[str] = None


class ImagesSpec(CRModel):
    """Pre-built image references."""

    server: Optional[str] = None
    admin_panel: Optional[str] = None
    main_fileserver: Optional[str] = None
    shard_fileserver: Optional[str] = None


# Spec: hosts and global settings


class HostShard(CRModel):
    name: Optional[str] = None
    host: Optional[str] = None


class HostsSpec(CRModel):
    """Public hostnames of the deployment."""

    server: Optional[str] = None
    admin: Optional[str] = None
    cdn: Optional[str] = None
    shards: list[HostShard] = Field(default_factory=list)


class GlobalLogging(CRModel):
    default_level: Optional[str] = None
    microsoft_level: Optional[str] = None
    asp_net_core_level: Optional[str] = None


class GlobalDatabase(CRModel):
    host: str = ""
    name: str = ""
    username: str = ""
    password: str = ""


class GlobalRedis(CRModel):
    connection_string: str = ""
    pool: int = 0


class GlobalJWT(CRModel):
    secret: Optional[str] = None


class GlobalTelemetry(CRModel):
    logs_endpoint: Optional[str] = None
    analytics_opt_in: bool = False
    analytics_connection_string: Optional[str] = None


class GlobalFederation(CRModel):
    """Federation identity of this server."""

    server_id: Optional[str] = None
    server_name: Optional[str] = None
    server_description: Optional[str] = None
    server_version: Optional[str] = None
    server_location: Optional[str] = None
    server_discord_link: Optional[str] = None
    server_type: Optional[str] = None
    server_join_secret: Optional[str] = None
    server_base_url: Optional[str] = None
    use_dns_bootstrap: bool = False
    dns_bootstrap_hostname: Optional[str] = None
    group_uid_prefix: Optional[str] = None
    role: Optional[str] = None


class GlobalConfig(CRModel):
    """Settings shared by every component's configuration document."""

    logging: Optional[GlobalLogging] = None
    database: Optional[GlobalDatabase] = None
    redis: Optional[GlobalRedis] = None
    jwt: Optional[GlobalJWT] = None
    telemetry: Optional[GlobalTelemetry] = None
    federation: Optional[GlobalFederation] = None


# Spec: components


class StorageSpec(CRModel):
    size: Optional[str] = None
    storage_class_name: Optional[str] = None
    access_modes: list[str] = Field(default_factory=list)


class ComponentSpec(CRModel):
    """Runtime settings shared by every component."""

    enabled: bool = True
    replicas: Optional[int] = Field(default=None, ge=0)
    storage: Optional[StorageSpec] = None
    # Free-form; anything other than a JSON object is ignored at render time.
    config_overrides: Any = None


class ShardSpec(ComponentSpec):
    """A named file-serving partition."""

    name: str
    replica_profile: Optional[str] = None


class FileserversSpec(CRModel):
    main: Optional[ComponentSpec] = None
    shards: list[ShardSpec] = Field(default_factory=list)


class ComponentsSpec(CRModel):
    server: Optional[ComponentSpec] = None
    admin_panel: Optional[ComponentSpec] = None
    fileservers: Optional[FileserversSpec] = None


class CertificatesSpec(CRModel):
    """Self-signed certificate request."""

    mode: Optional[str] = None
    common_name: Optional[str] = None
    dns_names: list[str] = Field(default_factory=list)


# Spec: tunnel exposure


class SecretRef(CRModel):
    name: Optional[str] = None
    namespace: Optional[str] = None


class CloudflaredIngressRule(CRModel):
    """Maps a public hostname to an internal service."""

    hostname: Optional[str] = None
    component: Optional[str] = None
    shard_name: Optional[str] = None
    service_name: Optional[str] = None
    service_namespace: Optional[str] = None
    service_port: Optional[int] = None
    special_service: Optional[str] = None


class CloudflaredSpec(CRModel):
    enabled: bool = True
    image: Optional[str] = None
    tunnel_name: Optional[str] = None
    tunnel_id: Optional[str] = None
    credentials_secret_ref: Optional[SecretRef] = None
    extra_args: list[str] = Field(default_factory=list)
    ingress: list[CloudflaredIngressRule] = Field(default_factory=list)


class HonseFarmClusterSpec(CRModel):
    """Desired deployment described by a HonseFarmCluster."""

    namespace: str = DEFAULT_NAMESPACE
    api_domain: Optional[str] = None
    deployment_mode: DeploymentMode = DeploymentMode.PREBUILT
    version: Optional[str] = None
    source: Optional[SourceSpec] = None
    build: Optional[BuildSpec] = None
    registry: Optional[RegistrySpec] = None
    images: Optional[ImagesSpec] = None
    hosts: Optional[HostsSpec] = None
    global_: Optional[GlobalConfig] = Field(default=None, alias="global")
    components: Optional[ComponentsSpec] = None
    certificates: Optional[CertificatesSpec] = None
    cloudflared: Optional[CloudflaredSpec] = None

    @property
    def target_namespace(self) -> str:
        """Namespace the child resources live in."""
        return self.namespace or DEFAULT_NAMESPACE

    @property
    def build_mode(self) -> bool:
        """Whether images are built from source by this operator."""
        return self.deployment_mode == DeploymentMode.BUILD

    @property
    def build_identifier(self) -> str:
        """Version token used to tag and track a build."""
        if self.version:
            return self.version
        if self.source and self.source.ref:
            return self.source.ref
        return "latest"


# Status


class Condition(CRModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


class CloudflaredStatus(CRModel):
    ready: bool = False
    last_error: str = ""


class HonseFarmClusterStatus(CRModel):
    """Observed state written by the operator."""

    phase: Optional[ClusterPhase] = None
    last_build_commit: Optional[str] = None
    last_build_time: Optional[datetime] = None
    conditions: list[Condition] = Field(default_factory=list)
    cloudflared_status: Optional[CloudflaredStatus] = None
    observed_generation: Optional[int] = None

    def set_condition(
        self, type_: str, status: bool, reason: str, message: str = ""
    ) -> None:
        """
        Upsert a condition, bumping the transition time on status changes.

        Args:
            type_: Condition type
            status: Condition truth value
            reason: CamelCase reason
            message: Human readable message
        """
        value = "True" if status else "False"
        for condition in self.conditions:
            if condition.type == type_:
                if condition.status != value:
                    condition.last_transition_time = datetime.now(timezone.utc)
                condition.status = value
                condition.reason = reason
                condition.message = message
                return
        self.conditions.append(
            Condition(
                type=type_,
                status=value,
                reason=reason,
                message=message,
                last_transition_time=datetime.now(timezone.utc),
            )
        )

    def to_body(self) -> dict[str, Any]:
        """Serialize to the camelCase status document."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def patch_body(self, previous: "HonseFarmClusterStatus") -> dict[str, Any]:
        """
        Status document for a merge patch over ``previous``.

        Fields set in ``previous`` but unset now are sent as null so the patch
        removes them.
        """
        body = self.to_body()
        for name in previous.to_body():
            body.setdefault(name, None)
        return body


class ClusterMeta(CRModel):
    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    deletion_timestamp: Optional[datetime] = None
    resource_version: Optional[str] = None
    finalizers: list[str] = Field(default_factory=list)


class HonseFarmCluster(CRModel):
    """A HonseFarmCluster custom resource."""

    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str = KIND
    metadata: ClusterMeta
    spec: HonseFarmClusterSpec = Field(default_factory=HonseFarmClusterSpec)
    status: HonseFarmClusterStatus = Field(default_factory=HonseFarmClusterStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "HonseFarmCluster":
        """Parse a custom object as returned by CustomObjectsApi."""
        return cls.model_validate(obj)

    @property
    def key(self) -> str:
        """Namespace/name key identifying this cluster object."""
        return f"{self.metadata.namespace}/{self.metadata.name}"


# Watch


class WatchEvent(BaseModel):
    """A change observed on a cluster object or one of its children."""

    event_type: str
    resource_type: str
    name: str
    namespace: Optional[str] = None
    generation: Optional[int] = None
    cluster_key: Optional[str] = None
    deleting: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
