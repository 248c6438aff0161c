"""Reconcile entry point for HonseFarmCluster objects."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Mapping, Optional

from kubernetes.client import CustomObjectsApi

from .config import Settings
from .convergence import ApplyOutcome, ConvergenceEngine, KindHandler
from .errors import ApplyError, ConfigurationError, MaterialGenerationError
from .models import (
    FINALIZER,
    ClusterPhase,
    CloudflaredStatus,
    HonseFarmCluster,
    HonseFarmClusterStatus,
)
from .pipeline import BuildPipeline
from .renderer import render
from .resources import DesiredResource, ResourceKind
from .tunnel import CONFIG_MAP_NAME as TUNNEL_CONFIG_MAP
from .tunnel import DEPLOYMENT_NAME as TUNNEL_DEPLOYMENT
from .tunnel import tunnel_enabled

logger = logging.getLogger(__name__)

RECONCILED = "Reconciled"


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass."""

    requeue_after: Optional[float] = None
    phase: Optional[ClusterPhase] = None
    outcomes: dict[str, ApplyOutcome] = field(default_factory=dict)


class Reconciler:
    """Runs reconcile passes against one control plane."""

    def __init__(
        self,
        handlers: Mapping[ResourceKind, KindHandler],
        custom_objects: Optional[CustomObjectsApi],
        settings: Settings,
    ):
        """
        Initialize reconciler.

        Args:
            handlers: Per-kind handler registry
            custom_objects: Custom objects API used for status writes
            settings: Operator settings
        """
        self.handlers = handlers
        self.custom_objects = custom_objects
        self.settings = settings

    def reconcile(
        self, cluster: HonseFarmCluster, cancel: Optional[threading.Event] = None
    ) -> ReconcileResult:
        """
        Converge the cluster's children and write its status.

        Args:
            cluster: HonseFarmCluster to reconcile
            cancel: Event that abandons the pass when set

        Returns:
            ReconcileResult with the phase reached and when to look again

        Raises:
            ApplyError: If a control-plane call failed
            MaterialGenerationError: If secret material could not be generated
            ReconcileCancelled: If the pass was cancelled
        """
        engine = ConvergenceEngine(self.handlers, cluster, self.custom_objects, cancel)
        if FINALIZER not in cluster.metadata.finalizers:
            engine.set_finalizers([*cluster.metadata.finalizers, FINALIZER])
            logger.debug(f"Added finalizer to {cluster.key}")

        status = cluster.status.model_copy(deep=True)
        status.observed_generation = cluster.metadata.generation

        try:
            desired = render(cluster, self.settings)
        except ConfigurationError as e:
            logger.error(f"Invalid configuration for {cluster.key}: {e}")
            status.set_condition(RECONCILED, False, e.reason, str(e))
            self._write_status(engine, cluster, status)
            return ReconcileResult(phase=status.phase)

        result = ReconcileResult()
        tunnel_on = tunnel_enabled(cluster.spec)
        try:
            self._converge(cluster, engine, desired, status, result)
        except (ApplyError, MaterialGenerationError) as e:
            logger.error(f"Reconcile of {cluster.key} failed: {e}")
            status.set_condition(RECONCILED, False, e.reason, str(e))
            if tunnel_on and _failed_in_tunnel(e):
                status.cloudflared_status = CloudflaredStatus(ready=False, last_error=str(e))
            try:
                self._write_status(engine, cluster, status)
            except ApplyError as write_error:
                logger.error(f"Could not record failure on {cluster.key}: {write_error}")
            raise

        if tunnel_on:
            status.cloudflared_status = CloudflaredStatus(ready=True, last_error="")
        else:
            status.cloudflared_status = None
        status.set_condition(RECONCILED, True, RECONCILED, f"Phase {status.phase.value}")
        self._write_status(engine, cluster, status)

        result.phase = status.phase
        logger.info(f"Reconciled {cluster.key}: phase {status.phase.value}")
        return result

    def finalize(
        self, cluster: HonseFarmCluster, cancel: Optional[threading.Event] = None
    ) -> ReconcileResult:
        """
        Delete the children of a cluster being deleted and release it.

        Children are found by their owner labels, so those outside the
        cluster's namespace are removed as well.

        Args:
            cluster: HonseFarmCluster with a deletion timestamp
            cancel: Event that abandons the pass when set

        Returns:
            Empty ReconcileResult

        Raises:
            ApplyError: If a child could not be deleted or the finalizer removed
            ReconcileCancelled: If the pass was cancelled
        """
        if FINALIZER not in cluster.metadata.finalizers:
            return ReconcileResult()

        engine = ConvergenceEngine(self.handlers, cluster, self.custom_objects, cancel)
        deleted = engine.delete_owned()
        engine.set_finalizers([f for f in cluster.metadata.finalizers if f != FINALIZER])
        logger.info(f"Cleaned up {deleted} resources of {cluster.key}")
        return ReconcileResult()

    def _converge(
        self,
        cluster: HonseFarmCluster,
        engine: ConvergenceEngine,
        desired: list[DesiredResource],
        status: HonseFarmClusterStatus,
        result: ReconcileResult,
    ) -> None:
        job: Optional[DesiredResource] = None
        gated: list[DesiredResource] = []

        for resource in desired:
            if resource.kind == ResourceKind.JOB:
                job = resource
            elif resource.requires_build:
                gated.append(resource)
            else:
                result.outcomes[resource.key] = engine.apply(resource)

        if cluster.spec.build_mode and job is not None:
            build = BuildPipeline(engine, self.settings).advance(cluster, job, status)
            result.requeue_after = build.requeue_after
            if not build.built:
                return
            if build.build_id and build.build_id != cluster.spec.build_identifier:
                logger.info(f"Deploying {cluster.key} from kept build {build.build_id}")
                rendered = render(cluster, self.settings, build_id=build.build_id)
                gated = [resource for resource in rendered if resource.requires_build]

        for resource in gated:
            result.outcomes[resource.key] = engine.apply(resource)
        status.phase = ClusterPhase.READY

    @staticmethod
    def _write_status(
        engine: ConvergenceEngine, cluster: HonseFarmCluster, status: HonseFarmClusterStatus
    ) -> None:
        """Write the status unless it is unchanged."""
        if status.to_body() == cluster.status.to_body():
            return
        engine.write_status(status)


def _failed_in_tunnel(error: Exception) -> bool:
    if not isinstance(error, ApplyError):
        return False
    return error.name in (TUNNEL_CONFIG_MAP, TUNNEL_DEPLOYMENT)
