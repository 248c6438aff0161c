"""Kubernetes client management."""

import logging
from typing import Mapping, Optional

from kubernetes import config
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    BatchV1Api,
    CoreV1Api,
    CustomObjectsApi,
    VersionApi,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from .config import Settings
from .convergence import KindHandler, build_handler_registry
from .errors import ConfigurationError
from .resources import ResourceKind

logger = logging.getLogger(__name__)


class ClusterConnection:
    """Connection to the Kubernetes cluster the operator manages."""

    def __init__(self, settings: Settings):
        """
        Initialize cluster connection.

        Args:
            settings: Operator settings (kubeconfig path and context)

        Raises:
            ConfigurationError: If no usable cluster configuration is found
        """
        self.settings = settings
        self._api_client: Optional[ApiClient] = None
        self._core_v1: Optional[CoreV1Api] = None
        self._apps_v1: Optional[AppsV1Api] = None
        self._batch_v1: Optional[BatchV1Api] = None
        self._custom_objects: Optional[CustomObjectsApi] = None
        self._handlers: Optional[Mapping[ResourceKind, KindHandler]] = None

        self._initialize_client()

    def _initialize_client(self):
        """Initialize Kubernetes API client."""
        try:
            if self.settings.kubeconfig_path:
                config.load_kube_config(
                    config_file=self.settings.kubeconfig_path,
                    context=self.settings.kube_context,
                )
            else:
                # Running inside the cluster
                config.load_incluster_config()
        except (ConfigException, OSError) as e:
            raise ConfigurationError(f"Failed to initialize cluster connection: {e}") from e

        self._api_client = ApiClient()
        self._core_v1 = CoreV1Api(self._api_client)
        self._apps_v1 = AppsV1Api(self._api_client)
        self._batch_v1 = BatchV1Api(self._api_client)
        self._custom_objects = CustomObjectsApi(self._api_client)

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance."""
        if not self._core_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance."""
        if not self._apps_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._apps_v1

    @property
    def batch_v1(self) -> BatchV1Api:
        """Get BatchV1Api instance."""
        if not self._batch_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._batch_v1

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Get CustomObjectsApi instance."""
        if not self._custom_objects:
            raise RuntimeError("Cluster connection not initialized")
        return self._custom_objects

    @property
    def handlers(self) -> Mapping[ResourceKind, KindHandler]:
        """Per-kind handler registry bound to this connection."""
        if self._handlers is None:
            self._handlers = build_handler_registry(self.core_v1, self.apps_v1, self.batch_v1)
        return self._handlers

    def is_healthy(self) -> bool:
        """
        Check if cluster connection is healthy.

        Returns:
            True if the API server answers
        """
        try:
            self.core_v1.get_api_resources()
            return True
        except ApiException:
            return False

    def get_cluster_version(self) -> str:
        """Git version of the API server."""
        return VersionApi(self._api_client).get_code().git_version

    def close(self):
        """Close the cluster connection."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None

        self._core_v1 = None
        self._apps_v1 = None
        self._batch_v1 = None
        self._custom_objects = None
        self._handlers = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
