"""Build-and-publish pipeline for clusters deployed from source."""

import logging
import re
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from kubernetes.client import V1Job, V1VolumeMount

from .config import Settings
from .errors import ConfigurationError
from .models import ClusterPhase, HonseFarmCluster, HonseFarmClusterSpec, HonseFarmClusterStatus
from .resources import (
    BUILD_ID_ANNOTATION,
    CLUSTER_LABEL,
    NAME_LABEL,
    DesiredResource,
    ResourceKind,
    build_job_name,
    job_body,
    managed_labels,
    secret_volume,
)

if TYPE_CHECKING:
    from .convergence import ConvergenceEngine

logger = logging.getLogger(__name__)

WORKSPACE = "/workspace/src"
DEFAULT_REF = "main"
REGISTRY_AUTH_DIR = "/run/registry-auth"
REGISTRY_AUTH_FILE = f"{REGISTRY_AUTH_DIR}/.dockerconfigjson"

_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def validate_build(spec: HonseFarmClusterSpec) -> None:
    """
    Check that build mode has everything the pipeline needs.

    Raises:
        ConfigurationError: If source, registry or components are missing
    """
    if spec.source is None or not spec.source.repo_url:
        raise ConfigurationError("spec.source.repoUrl must be set in Build mode")
    if spec.registry is None or not spec.registry.host:
        raise ConfigurationError("spec.registry.host must be set in Build mode")
    if spec.build is None or not spec.build.components:
        raise ConfigurationError("spec.build.components must not be empty in Build mode")


def image_tag(identifier: str) -> str:
    """Turn a build identifier such as a branch name into a valid image tag."""
    tag = _TAG_INVALID.sub("-", identifier).lstrip(".-")
    return tag[:128] or "latest"


def image_reference(host: str, prefix: Optional[str], name: str, identifier: str) -> str:
    """
    Compose ``<host>/<prefix>/<name>:<tag>``.

    An empty prefix is left out.
    """
    parts = [host.rstrip("/")]
    if prefix and prefix.strip("/"):
        parts.append(prefix.strip("/"))
    parts.append(name)
    return f"{'/'.join(parts)}:{image_tag(identifier)}"


def built_image(
    spec: HonseFarmClusterSpec, component_name: str, identifier: Optional[str] = None
) -> Optional[str]:
    """
    Image the pipeline publishes for a component.

    Args:
        spec: Cluster specification
        component_name: Declared build component
        identifier: Build identifier to tag with, defaults to the current one

    Returns:
        Image reference, or None if the component is not built from source
    """
    if spec.build is None or spec.registry is None or not spec.registry.host:
        return None
    for component in spec.build.components:
        if component.name == component_name:
            return image_reference(
                spec.registry.host,
                spec.registry.repository_prefix,
                component.name,
                identifier or spec.build_identifier,
            )
    return None


def build_script(spec: HonseFarmClusterSpec) -> str:
    """
    Render the shell script executed by the build job.

    Clones the repository, then builds and pushes every declared component in
    declaration order. The first failing command fails the job.

    Args:
        spec: Cluster specification in build mode

    Returns:
        Script text for ``sh -c``
    """
    validate_build(spec)
    source = spec.source
    registry = spec.registry

    lines = [
        "set -eu",
        f"git clone --depth 1 --branch {shlex.quote(source.ref or DEFAULT_REF)} "
        f"{shlex.quote(source.repo_url)} {WORKSPACE}",
        f"cd {WORKSPACE}",
    ]
    if source.context_base_dir:
        lines.append(f"cd {shlex.quote(source.context_base_dir)}")

    push_flags = " --tls-verify=false" if registry.insecure else ""
    for component in spec.build.components:
        image = shlex.quote(built_image(spec, component.name))
        context = component.context_dir or "."
        dockerfile = f"{context.rstrip('/')}/{component.dockerfile or 'Dockerfile'}"
        lines.append(f"echo 'Building {component.name}'")
        lines.append(
            f"buildah bud -f {shlex.quote(dockerfile)} -t {image} {shlex.quote(context)}"
        )
        lines.append(f"buildah push{push_flags} {image}")

    return "\n".join(lines) + "\n"


def render_build_job(cluster: HonseFarmCluster, settings: Settings) -> DesiredResource:
    """
    Render the build job of a cluster.

    The job name depends on the cluster only; the build identifier it was
    created for is recorded in an annotation.

    Args:
        cluster: HonseFarmCluster in build mode
        settings: Operator settings (executor image, backoff limit)

    Returns:
        Job descriptor
    """
    spec = cluster.spec
    ns = spec.target_namespace
    name = build_job_name(cluster.metadata.name)

    env = {"STORAGE_DRIVER": "vfs", "BUILDAH_ISOLATION": "chroot"}
    volumes = None
    mounts = None
    if spec.registry and spec.registry.secret_ref:
        env["REGISTRY_AUTH_FILE"] = REGISTRY_AUTH_FILE
        volumes = [secret_volume(spec.registry.secret_ref, "registry-auth")]
        mounts = [V1VolumeMount(name="registry-auth", mount_path=REGISTRY_AUTH_DIR, read_only=True)]

    body = job_body(
        name=name,
        namespace=ns,
        image=settings.build_image,
        script=build_script(spec),
        labels=managed_labels(**{NAME_LABEL: name, CLUSTER_LABEL: cluster.metadata.name}),
        annotations={BUILD_ID_ANNOTATION: spec.build_identifier},
        backoff_limit=settings.build_backoff_limit,
        env=env,
        volumes=volumes,
        volume_mounts=mounts,
        privileged=True,
    )
    return DesiredResource(ResourceKind.JOB, name, ns, body, component="build")


def job_phase(job: V1Job) -> ClusterPhase:
    """
    Map observed job counters to a cluster phase.

    Any success wins; failures only count once nothing succeeded.
    """
    status = job.status
    succeeded = (status.succeeded or 0) if status else 0
    failed = (status.failed or 0) if status else 0
    if succeeded >= 1:
        return ClusterPhase.BUILT
    if failed >= 1:
        return ClusterPhase.BUILD_FAILED
    return ClusterPhase.BUILDING


def recorded_build_id(job: V1Job) -> Optional[str]:
    annotations = (job.metadata.annotations if job.metadata else None) or {}
    return annotations.get(BUILD_ID_ANNOTATION)


@dataclass
class BuildOutcome:
    """Phase reached by one pipeline evaluation and when to look again."""

    phase: ClusterPhase
    requeue_after: Optional[float] = None
    build_id: Optional[str] = None

    @property
    def built(self) -> bool:
        return self.phase == ClusterPhase.BUILT


class BuildPipeline:
    """Drives the build job of one cluster through its phases."""

    def __init__(self, engine: "ConvergenceEngine", settings: Settings):
        """
        Initialize build pipeline.

        Args:
            engine: Convergence engine used for every job read and write
            settings: Operator settings
        """
        self.engine = engine
        self.settings = settings

    def advance(
        self,
        cluster: HonseFarmCluster,
        job: DesiredResource,
        status: HonseFarmClusterStatus,
    ) -> BuildOutcome:
        """
        Evaluate the build job and record the result in ``status``.

        Pending creates the job, Building and BuildFailed schedule a re-check,
        Built records the build identifier once per identifier.

        Args:
            cluster: HonseFarmCluster in build mode
            job: Rendered build job descriptor
            status: Status being assembled for this pass, updated in place

        Returns:
            BuildOutcome with the new phase and re-check delay
        """
        observed = self.engine.read(job)
        if observed is None:
            self.engine.apply(job)
            logger.info(f"Started build {cluster.spec.build_identifier} for {cluster.key}")
            return self._set(status, ClusterPhase.BUILDING, self.settings.build_requeue_seconds)

        phase = job_phase(observed)
        current = cluster.spec.build_identifier
        recorded = recorded_build_id(observed)

        if recorded is not None and recorded != current:
            if self.settings.prune_superseded_build_jobs and phase != ClusterPhase.BUILDING:
                self.engine.delete(job)
                logger.info(f"Removed build job for {recorded} of {cluster.key}; {current} is next")
                return self._set(status, ClusterPhase.PENDING, self.settings.build_requeue_seconds)
            logger.warning(
                f"Build job {job.name} was created for {recorded} but {cluster.key} "
                f"now requests {current}; delete the job to rebuild"
            )

        if phase == ClusterPhase.BUILD_FAILED:
            return self._set(status, phase, self.settings.build_failed_requeue_seconds)
        if phase == ClusterPhase.BUILDING:
            return self._set(status, phase, self.settings.build_requeue_seconds)

        built_id = recorded or current
        if status.last_build_commit != built_id:
            status.last_build_commit = built_id
            status.last_build_time = datetime.now(timezone.utc)
            logger.info(f"Build {built_id} of {cluster.key} finished")

        # Ready is re-derived by the caller once the gated workloads apply.
        if status.phase != ClusterPhase.READY:
            status.phase = ClusterPhase.BUILT
        return BuildOutcome(ClusterPhase.BUILT, build_id=built_id)

    @staticmethod
    def _set(
        status: HonseFarmClusterStatus, phase: ClusterPhase, requeue_after: Optional[float]
    ) -> BuildOutcome:
        status.phase = phase
        return BuildOutcome(phase, requeue_after)
