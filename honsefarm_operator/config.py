"""Configuration management for the HonseFarm operator."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Operator settings."""

    model_config = SettingsConfigDict(
        env_prefix="HONSEFARM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Settings
    service_name: str = "honsefarm-operator"
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file; in-cluster config when unset",
    )
    kube_context: Optional[str] = None
    watch_namespace: Optional[str] = Field(
        default=None,
        description="Only watch HonseFarmClusters in this namespace",
    )

    # Build Pipeline Settings
    build_image: str = "quay.io/buildah/stable:latest"
    build_backoff_limit: int = 0
    build_requeue_seconds: float = 20.0
    build_failed_requeue_seconds: float = 60.0
    prune_superseded_build_jobs: bool = Field(
        default=False,
        description="Delete a finished build job whose build id no longer matches the spec",
    )

    # Reconciliation Settings
    error_requeue_seconds: float = 30.0
    periodic_resync_seconds: float = 300.0
    max_concurrent_reconciles: int = 4
    watch_timeout_seconds: int = 60

    # Tunnel Settings
    cloudflared_image: str = "ghcr.io/cloudflare/cloudflared:latest"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
