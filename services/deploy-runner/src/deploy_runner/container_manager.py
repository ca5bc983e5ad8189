from datetime import datetime
from typing import Any, Dict, List, Optional

import docker
import structlog

from deploy_runner.container_config import ContainerRunConfig, ResourceLimits, RunnerLabels, container_name
from deploy_runner.docker_ops import DockerClientWrapper
from deploy_runner.errors import RunError
from deploy_runner.models import ContainerHandle, ImageReference

logger = structlog.get_logger()


def _host_port(attrs: Dict[str, Any], port: int | None) -> int | None:
    """Engine-assigned host port for the declared container port, if published."""
    if port is None:
        return None
    bindings = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    for binding in bindings.get(f"{port}/tcp") or []:
        host_port = binding.get("HostPort")
        if host_port:
            return int(host_port)
    return None


def _created(attrs: Dict[str, Any]) -> datetime | None:
    created = attrs.get("Created")
    if not created:
        return None
    try:
        # Engine reports RFC3339 with nanoseconds
        return datetime.fromisoformat(created.split(".")[0].replace("Z", "") + "+00:00")
    except (ValueError, AttributeError):
        return None


class ContainerLifecycleManager:
    """
    Manages deployment container lifecycle.

    Exactly one container per deployment id: ``run`` replaces any previous
    container carrying the deployment's conventional name.
    """

    def __init__(
        self,
        docker_client: DockerClientWrapper,
        labels: RunnerLabels | None = None,
        container_prefix: str = "deploy-runner",
        restart_policy: str = "unless-stopped",
        stop_timeout: int = 10,
    ):
        self.docker = docker_client
        self.labels = labels or RunnerLabels()
        self.container_prefix = container_prefix
        self.restart_policy = restart_policy
        self.stop_timeout = stop_timeout

    def _to_handle(self, container: Any) -> ContainerHandle:
        attrs = container.attrs or {}
        labels = container.labels or {}
        port_label = labels.get(self.labels.port, "")
        internal_port = int(port_label) if port_label.isdigit() else None
        return ContainerHandle(
            id=container.id,
            name=container.name or "",
            deployment_id=labels.get(self.labels.deployment, ""),
            project_id=labels.get(self.labels.project, ""),
            status=container.status or "unknown",
            internal_port=internal_port,
            host_port=_host_port(attrs, internal_port),
            created=_created(attrs),
        )

    async def _remove_existing(self, name: str, deployment_id: str) -> None:
        try:
            removed = await self.docker.remove_container(name, force=True)
        except docker.errors.APIError as e:
            raise RunError(f"Failed to remove previous container {name}: {e.explanation or e}") from e
        if removed:
            logger.info("previous_container_removed", deployment_id=deployment_id, container_name=name)

    async def run(
        self,
        image: ImageReference | str,
        deployment_id: str,
        project_id: str,
        port: int,
        env_vars: Optional[Dict[str, str]] = None,
        limits: ResourceLimits | None = None,
    ) -> ContainerHandle:
        """
        Create and start the deployment container, replacing any previous one.

        Raises:
            RunError: image missing, port conflict, or any engine refusal.
        """
        name = container_name(self.container_prefix, deployment_id)
        config = ContainerRunConfig(
            image=str(image),
            name=name,
            port=port,
            labels=self.labels.for_container(deployment_id, project_id, port),
            env_vars=env_vars or {},
            limits=limits or ResourceLimits(),
            restart_policy=self.restart_policy,
        )

        await self._remove_existing(name, deployment_id)

        logger.info(
            "creating_container",
            deployment_id=deployment_id,
            image=config.image,
            container_name=name,
            port=port,
            memory_bytes=config.limits.memory_bytes,
            cpu_shares=config.limits.cpu_shares,
        )

        try:
            container = await self.docker.create_container(**config.to_docker_create_kwargs())
        except docker.errors.ImageNotFound as e:
            raise RunError(f"Image not found: {config.image}") from e
        except docker.errors.APIError as e:
            raise RunError(str(e.explanation or e)) from e

        try:
            await self.docker.start_container(container)
        except docker.errors.APIError as e:
            logger.error("container_start_failed", deployment_id=deployment_id, error=str(e))
            try:
                await self.docker.remove_container(container.id, force=True)
            except docker.errors.APIError as cleanup_error:
                logger.warning(
                    "failed_container_cleanup_failed", deployment_id=deployment_id, error=str(cleanup_error)
                )
            raise RunError(str(e.explanation or e)) from e

        handle = self._to_handle(container)
        logger.info(
            "container_started",
            deployment_id=deployment_id,
            container_id=handle.id,
            host_port=handle.host_port,
        )
        return handle

    async def stop(self, container_id: str) -> bool:
        """Graceful stop then remove. Best-effort: never raises."""
        try:
            await self.docker.stop_container(container_id, timeout=self.stop_timeout)
            await self.docker.remove_container(container_id)
        except Exception as e:
            logger.warning("container_stop_failed", container_id=container_id, error=str(e))
            return False
        logger.info("container_stopped", container_id=container_id)
        return True

    async def list(self) -> List[ContainerHandle]:
        """All runner-labeled containers, running or exited."""
        containers = await self.docker.list_containers(filters={"label": [self.labels.deployment]}, all=True)
        return [self._to_handle(c) for c in containers]

    async def find(self, deployment_id: str) -> ContainerHandle | None:
        """Resolve a deployment id to its container via labels."""
        containers = await self.docker.list_containers(
            filters={"label": [f"{self.labels.deployment}={deployment_id}"]}, all=True
        )
        if not containers:
            return None
        return self._to_handle(containers[0])
