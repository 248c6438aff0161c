"""HonseFarm operator - reconciles HonseFarmCluster resources into running clusters."""

from .cluster import ClusterConnection
from .config import Settings, get_settings
from .convergence import ApplyOutcome, ConvergenceEngine, KindHandler, build_handler_registry
from .errors import (
    ApplyError,
    ConfigurationError,
    MaterialGenerationError,
    OperatorError,
    ReconcileCancelled,
)
from .models import (
    ClusterPhase,
    DeploymentMode,
    HonseFarmCluster,
    HonseFarmClusterSpec,
    HonseFarmClusterStatus,
    WatchEvent,
)
from .pipeline import BuildOutcome, BuildPipeline
from .reconciler import Reconciler, ReconcileResult
from .renderer import render
from .resources import DesiredResource, ResourceKind
from .watch import ClusterWatcher, OperatorLoop

__version__ = "0.1.0"

__all__ = [
    # Cluster connection
    "ClusterConnection",
    # Configuration
    "Settings",
    "get_settings",
    # Rendering and convergence
    "render",
    "DesiredResource",
    "ResourceKind",
    "ConvergenceEngine",
    "ApplyOutcome",
    "KindHandler",
    "build_handler_registry",
    # Build pipeline
    "BuildPipeline",
    "BuildOutcome",
    # Reconciliation
    "Reconciler",
    "ReconcileResult",
    "ClusterWatcher",
    "OperatorLoop",
    # Models
    "HonseFarmCluster",
    "HonseFarmClusterSpec",
    "HonseFarmClusterStatus",
    "ClusterPhase",
    "DeploymentMode",
    "WatchEvent",
    # Errors
    "OperatorError",
    "ConfigurationError",
    "MaterialGenerationError",
    "ApplyError",
    "ReconcileCancelled",
]
