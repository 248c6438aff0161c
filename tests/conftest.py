"""Pytest configuration and fixtures for HonseFarm operator tests."""

import copy
from types import MappingProxyType
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from honsefarm_operator.config import Settings
from honsefarm_operator.convergence import (
    KindHandler,
    sync_config_map,
    sync_deployment,
    sync_service,
)
from honsefarm_operator.models import HonseFarmCluster
from honsefarm_operator.resources import ResourceKind

SYNC = {
    ResourceKind.CONFIG_MAP: sync_config_map,
    ResourceKind.DEPLOYMENT: sync_deployment,
    ResourceKind.SERVICE: sync_service,
}


class FakeControlPlane:
    """In-memory object store speaking the handler interface."""

    def __init__(self):
        self.objects: dict[tuple, object] = {}
        self.calls: list[tuple] = []

    def _key(self, kind, name, namespace):
        return (kind, namespace, name)

    def read(self, kind, name, namespace):
        self.calls.append(("read", kind, name))
        obj = self.objects.get(self._key(kind, name, namespace))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def create(self, kind, namespace, body):
        self.calls.append(("create", kind, body.metadata.name))
        key = self._key(kind, body.metadata.name, namespace)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[key] = copy.deepcopy(body)
        return body

    def replace(self, kind, name, namespace, body):
        self.calls.append(("replace", kind, name))
        self.objects[self._key(kind, name, namespace)] = copy.deepcopy(body)
        return body

    def delete(self, kind, name, namespace):
        self.calls.append(("delete", kind, name))
        if self.objects.pop(self._key(kind, name, namespace), None) is None:
            raise ApiException(status=404, reason="Not Found")

    def list_owned(self, kind, selector):
        self.calls.append(("list", kind, selector))
        wanted = dict(term.split("=", 1) for term in selector.split(","))
        return [
            copy.deepcopy(obj)
            for (k, _, _), obj in self.objects.items()
            if k == kind and wanted.items() <= (obj.metadata.labels or {}).items()
        ]

    def get(self, kind, name, namespace):
        return self.objects.get(self._key(kind, name, namespace))

    def count(self, verb, kind=None):
        return sum(1 for c in self.calls if c[0] == verb and (kind is None or c[1] == kind))

    def writes(self):
        return [c for c in self.calls if c[0] not in ("read", "list")]

    def handlers(self):
        registry = {}
        for kind in ResourceKind:
            sync = SYNC.get(kind)
            namespaced = kind != ResourceKind.NAMESPACE
            registry[kind] = KindHandler(
                read=lambda name, ns, k=kind: self.read(k, name, ns),
                create=lambda ns, body, k=kind: self.create(k, ns, body),
                replace=(lambda name, ns, body, k=kind: self.replace(k, name, ns, body)) if sync else None,
                delete=(lambda name, ns, k=kind: self.delete(k, name, ns)) if namespaced else None,
                list_owned=(lambda selector, k=kind: self.list_owned(k, selector)) if namespaced else None,
                sync=sync,
            )
        return MappingProxyType(registry)


@pytest.fixture
def plane():
    """Empty in-memory control plane."""
    return FakeControlPlane()


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.core_v1 = MagicMock(spec=client.CoreV1Api)
    mock_conn.apps_v1 = MagicMock(spec=client.AppsV1Api)
    mock_conn.batch_v1 = MagicMock(spec=client.BatchV1Api)
    mock_conn.custom_objects = MagicMock(spec=client.CustomObjectsApi)
    return mock_conn


@pytest.fixture
def custom_objects():
    """Mock custom objects API used for status writes."""
    return MagicMock(spec=client.CustomObjectsApi)


@pytest.fixture
def settings():
    """Operator settings with defaults, independent of the environment."""
    return Settings(_env_file=None)


def make_cluster(spec: dict, name: str = "demo", namespace: str = "honsefarm", status: dict = None):
    """Build a HonseFarmCluster as read from the API server."""
    obj = {
        "apiVersion": "clusters.honse.farm/v1alpha1",
        "kind": "HonseFarmCluster",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "0b7c6a52-1111-4a5e-9d1c-6f1b0d7e2a10",
            "generation": 1,
        },
        "spec": spec,
    }
    if status is not None:
        obj["status"] = status
    return HonseFarmCluster.from_object(obj)


@pytest.fixture
def server_only_cluster():
    """Prebuilt cluster running only the core server with two replicas."""
    return make_cluster(
        {
            "namespace": "honsefarm",
            "images": {"server": "registry.example.com/honsefarm/server:1.4.0"},
            "components": {"server": {"enabled": True, "replicas": 2}},
        }
    )


@pytest.fixture
def full_cluster():
    """Prebuilt cluster with every component, a shard, storage and TLS."""
    return make_cluster(
        {
            "namespace": "honsefarm",
            "apiDomain": "api.honse.farm",
            "images": {
                "server": "registry.example.com/honsefarm/server:1.4.0",
                "adminPanel": "registry.example.com/honsefarm/admin:1.4.0",
                "mainFileserver": "registry.example.com/honsefarm/files:1.4.0",
                "shardFileserver": "registry.example.com/honsefarm/files:1.4.0",
            },
            "hosts": {
                "server": "api.honse.farm",
                "admin": "admin.honse.farm",
                "cdn": "cdn.honse.farm",
                "shards": [{"name": "eu", "host": "eu.cdn.honse.farm"}],
            },
            "global": {
                "database": {
                    "host": "postgres",
                    "name": "honsefarm",
                    "username": "honse",
                    "password": "s3cret",
                },
                "redis": {"connectionString": "redis:6379", "pool": 50},
                "jwt": {"secret": "jwt-from-spec"},
            },
            "components": {
                "server": {"replicas": 2, "storage": {"size": "5Gi"}},
                "adminPanel": {},
                "fileservers": {
                    "main": {"storage": {"size": "50Gi", "storageClassName": "fast"}},
                    "shards": [{"name": "eu", "replicas": 1}],
                },
            },
            "certificates": {"mode": "selfsigned", "dnsNames": ["api.honse.farm", "cdn.honse.farm"]},
        }
    )


@pytest.fixture
def build_cluster():
    """Cluster deployed from source in Build mode."""
    return make_cluster(
        {
            "namespace": "honsefarm",
            "deploymentMode": "Build",
            "version": "v1.5.0",
            "source": {
                "repoUrl": "https://github.com/honsefarm/honsefarm.git",
                "ref": "release/1.5",
                "contextBaseDir": "src",
            },
            "build": {
                "components": [
                    {"name": "server", "contextDir": "Server", "dockerfile": "Dockerfile"},
                    {"name": "adminpanel", "contextDir": "Admin"},
                ]
            },
            "registry": {
                "host": "registry.example.com",
                "repositoryPrefix": "honsefarm",
                "secretRef": "registry-push",
            },
            "images": {"mainFileserver": "registry.example.com/honsefarm/files:1.4.0"},
            "components": {
                "server": {"replicas": 1},
                "adminPanel": {},
                "fileservers": {"main": {}},
            },
        }
    )
