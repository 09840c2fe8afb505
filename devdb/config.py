"""
Configuration management for devdb.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="devdb", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=5000, env="API_PORT")
    api_workers: int = Field(default=1, env="API_WORKERS")
    api_url: str = Field(default="http://localhost:5000", env="API_URL")
    release_version: str = Field(default="unknown", env="RELEASE_VERSION")

    # Provisioning journal
    database_url: str = Field(default="sqlite:///./devdb.db", env="DATABASE_URL")

    # Redis (project registry and per-project locks)
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    registry_prefix: str = Field(default="devdb", env="REGISTRY_PREFIX")
    lock_ttl_seconds: float = Field(default=120.0, env="LOCK_TTL_SECONDS")
    lock_wait_seconds: float = Field(default=30.0, env="LOCK_WAIT_SECONDS")

    # Kubernetes
    namespace: str = Field(default="devdb", env="NAMESPACE")
    kubeconfig: Optional[str] = Field(default=None, env="KUBECONFIG")
    in_cluster: bool = Field(default=False, env="IN_CLUSTER")
    storage_class: Optional[str] = Field(default=None, env="STORAGE_CLASS")
    volume_size: str = Field(default="10Gi", env="VOLUME_SIZE")
    snapshot_class: Optional[str] = Field(default=None, env="SNAPSHOT_CLASS")
    service_type: str = Field(default="LoadBalancer", env="SERVICE_TYPE")
    load_balancer_scheme: str = Field(
        default="internet-facing", env="LOAD_BALANCER_SCHEME"
    )
    init_image: str = Field(default="curlimages/curl:8.8.0", env="INIT_IMAGE")
    release_volumes_on_delete: bool = Field(
        default=True, env="RELEASE_VOLUMES_ON_DELETE"
    )

    # Snapshots
    snapshots_enabled: bool = Field(default=True, env="SNAPSHOTS_ENABLED")
    snapshot_settle_seconds: float = Field(
        default=30.0, env="SNAPSHOT_SETTLE_SECONDS"
    )
    snapshot_ready_poll_attempts: int = Field(
        default=20, env="SNAPSHOT_READY_POLL_ATTEMPTS"
    )
    snapshot_ready_poll_interval: float = Field(
        default=5.0, env="SNAPSHOT_READY_POLL_INTERVAL"
    )
    snapshot_retention: int = Field(default=5, env="SNAPSHOT_RETENTION")

    # Object storage
    backup_bucket: str = Field(default="devdb-backups", env="BACKUP_BUCKET")
    aws_region: str = Field(default="us-east-1", env="AWS_REGION")
    s3_endpoint_url: Optional[str] = Field(default=None, env="S3_ENDPOINT_URL")
    presign_expiry_seconds: int = Field(default=3600, env="PRESIGN_EXPIRY_SECONDS")
    staging_dir: str = Field(default="/tmp/devdb", env="STAGING_DIR")

    # Probes
    http_probe_timeout: float = Field(default=10.0, env="HTTP_PROBE_TIMEOUT")
    connect_probe_timeout: float = Field(default=5.0, env="CONNECT_PROBE_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
