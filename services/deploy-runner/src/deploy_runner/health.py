"""HTTP readiness probe against a container's internal address."""

import time

import httpx
import structlog

from deploy_runner.docker_ops import DockerClientWrapper

logger = structlog.get_logger()


def container_address(attrs: dict) -> str | None:
    """Internal IP of a container: default bridge first, then any attached network."""
    settings = attrs.get("NetworkSettings") or {}
    if settings.get("IPAddress"):
        return settings["IPAddress"]
    for network in (settings.get("Networks") or {}).values():
        if network.get("IPAddress"):
            return network["IPAddress"]
    return None


class HealthProber:
    """Single-attempt readiness check. Advisory only: never raises."""

    def __init__(
        self,
        docker_client: DockerClientWrapper,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.docker = docker_client
        self.timeout = timeout
        self._transport = transport

    async def check(self, container_id: str, path: str, port: int) -> bool:
        """True only when GET http://<container-ip>:<port><path> answers 200."""
        start = time.time()
        url = None
        try:
            attrs = await self.docker.inspect_container(container_id)
            state = (attrs.get("State") or {}).get("Status")
            if state != "running":
                logger.warning("health_check_failed", container_id=container_id, reason=f"container {state}")
                return False

            address = container_address(attrs)
            if not address:
                logger.warning("health_check_failed", container_id=container_id, reason="no container address")
                return False

            url = f"http://{address}:{port}{path}"
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)

            healthy = response.status_code == 200  # noqa: PLR2004
            logger.info(
                "health_check",
                container_id=container_id,
                url=url,
                status_code=response.status_code,
                healthy=healthy,
                response_time_ms=round((time.time() - start) * 1000, 2),
            )
            return healthy
        except Exception as e:
            logger.warning(
                "health_check_failed",
                container_id=container_id,
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
