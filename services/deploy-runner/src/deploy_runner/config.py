"""Configuration for deploy-runner service."""

from functools import lru_cache

from pydantic import Field

from shared.config import BaseSettings, docker_url_field, redis_url_field


class Settings(BaseSettings):
    """Service settings from environment."""

    service_name: str = "deploy-runner"

    # HTTP surface
    runner_host: str = "0.0.0.0"
    runner_port: int = 3002

    # Backing services
    docker_url: str | None = docker_url_field()
    docker_max_workers: int = Field(default=8, ge=1)
    redis_url: str = redis_url_field()

    # Naming. Every label, image, container and temp dir is namespaced by
    # deployment id under these prefixes.
    label_prefix: str = "deploy-runner"
    image_namespace: str = "deploy-runner"
    container_prefix: str = "deploy-runner"
    build_file_name: str = "Dockerfile"
    build_context_excludes: list[str] = Field(default_factory=lambda: [".git", "node_modules"])

    # Runtime defaults
    default_memory_limit: str = "512Mi"
    default_cpu_shares: int = 1024
    default_port: int = 3000
    restart_policy: str = "unless-stopped"

    # Pipeline timing
    settle_delay_sec: float = 5.0
    health_check_path: str = "/health"
    health_check_timeout_sec: float = 5.0
    stop_grace_period_sec: int = 10
    pipeline_timeout_sec: float = 600.0

    # Logs / metrics
    log_tail_lines: int = 500
    metric_history_length: int = 1000

    external_url_template: str = "https://{project_id}.deploy-runner.app"
    git_access_token: str | None = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
