"""Point-in-time container resource metrics."""

from typing import Any, Dict

import structlog

from deploy_runner.docker_ops import DockerClientWrapper
from deploy_runner.models import MetricSample

logger = structlog.get_logger()


def cpu_percent(stats: Dict[str, Any]) -> float:
    """(cpu_delta / system_delta) * online_cpus * 100 over the engine's own window."""
    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (precpu.get("cpu_usage") or {}).get(
        "total_usage", 0
    )
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    online_cpus = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    return cpu_delta / system_delta * online_cpus * 100


def memory_percent(stats: Dict[str, Any]) -> float:
    memory = stats.get("memory_stats") or {}
    usage = memory.get("usage", 0)
    limit = memory.get("limit", 0)
    if not limit:
        return 0.0
    return usage / limit * 100


def network_totals(stats: Dict[str, Any]) -> tuple[int, int]:
    """Received / transmitted bytes summed over every attached interface."""
    networks = stats.get("networks") or {}
    rx = sum(net.get("rx_bytes", 0) for net in networks.values())
    tx = sum(net.get("tx_bytes", 0) for net in networks.values())
    return rx, tx


class MetricsCollector:
    def __init__(self, docker_client: DockerClientWrapper):
        self.docker = docker_client

    async def sample(self, container_id: str) -> MetricSample:
        """Current usage. Best-effort: any failure yields a zeroed sample."""
        try:
            stats = await self.docker.container_stats(container_id)
            rx, tx = network_totals(stats)
            return MetricSample(
                cpu=cpu_percent(stats),
                memory=memory_percent(stats),
                network_rx=rx,
                network_tx=tx,
            )
        except Exception as e:
            logger.warning("metrics_sample_failed", container_id=container_id, error=str(e))
            return MetricSample.zero()
