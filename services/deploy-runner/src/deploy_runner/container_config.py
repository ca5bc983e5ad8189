import re
from dataclasses import dataclass, field
from typing import Any, Dict

DEFAULT_MEMORY_BYTES = 512 * 1024 * 1024

MEMORY_PATTERN = re.compile(r"^(\d+)([KMGT]i?)$")

# Both the SI-looking and the binary spellings resolve to binary multipliers
MEMORY_UNITS: dict[str, int] = {
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
}


def parse_memory(quantity: str) -> int:
    """
    Parse a human-readable memory quantity ("512Mi", "1G") into bytes.

    Anything that does not match falls back to 512 MiB instead of failing
    the deployment.
    """
    match = MEMORY_PATTERN.match(quantity.strip()) if quantity else None
    if not match:
        return DEFAULT_MEMORY_BYTES
    number, unit = match.groups()
    return int(number) * MEMORY_UNITS[unit]


@dataclass(frozen=True)
class ResourceLimits:
    """Memory ceiling and relative CPU weight for one container."""

    memory: str = "512Mi"
    cpu_shares: int = 1024

    @property
    def memory_bytes(self) -> int:
        return parse_memory(self.memory)


@dataclass(frozen=True)
class RunnerLabels:
    """Label keys used to discover runner-managed images and containers."""

    prefix: str = "deploy-runner"

    @property
    def deployment(self) -> str:
        return f"{self.prefix}.deployment"

    @property
    def project(self) -> str:
        return f"{self.prefix}.project"

    @property
    def commit(self) -> str:
        return f"{self.prefix}.commit"

    @property
    def port(self) -> str:
        return f"{self.prefix}.port"

    def for_image(self, deployment_id: str, project_id: str, commit_sha: str) -> Dict[str, str]:
        return {
            self.deployment: deployment_id,
            self.project: project_id,
            self.commit: commit_sha,
        }

    def for_container(self, deployment_id: str, project_id: str, port: int) -> Dict[str, str]:
        return {
            self.deployment: deployment_id,
            self.project: project_id,
            self.port: str(port),
        }


def container_name(prefix: str, deployment_id: str) -> str:
    """Conventional container name for a deployment."""
    return f"{prefix}-{deployment_id}"


def image_name(namespace: str, deployment_id: str) -> str:
    """Image repository name for a deployment (engine requires lowercase)."""
    return f"{namespace}/{deployment_id}".lower()


@dataclass
class ContainerRunConfig:
    """Configuration for a deployment container."""

    image: str
    name: str
    port: int
    labels: Dict[str, str]
    env_vars: Dict[str, str] = field(default_factory=dict)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    restart_policy: str = "unless-stopped"

    def to_env_list(self) -> list[str]:
        """Environment variables as KEY=VALUE entries."""
        return [f"{key}={value}" for key, value in self.env_vars.items()]

    def to_docker_create_kwargs(self) -> Dict[str, Any]:
        """Generate kwargs for docker.containers.create().

        The declared port is published on an engine-chosen ephemeral host
        port (``None`` binding), so concurrent deployments never collide.
        """
        return {
            "image": self.image,
            "name": self.name,
            "environment": self.to_env_list(),
            "ports": {f"{self.port}/tcp": None},
            "mem_limit": self.limits.memory_bytes,
            "cpu_shares": self.limits.cpu_shares,
            "restart_policy": {"Name": self.restart_policy},
            "labels": self.labels,
        }
