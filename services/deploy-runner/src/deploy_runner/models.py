"""Data models for the deployment runner."""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Response models are serialized with camelCase keys for the calling platform
CAMEL_CASE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeploymentStatus(str, Enum):
    """Deployment state machine.

    PENDING -> BUILDING -> DEPLOYING -> SUCCESS | FAILED,
    CANCELED reachable from any non-terminal state.
    """

    PENDING = "PENDING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.SUCCESS, DeploymentStatus.FAILED, DeploymentStatus.CANCELED}
)


class DeploymentRequest(BaseModel):
    """Immutable input for one deployment attempt.

    Accepts both snake_case names and the camelCase names used by the
    platform's orchestration layer.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    deployment_id: str = Field(..., alias="deploymentId", min_length=1)
    project_id: str = Field(..., alias="projectId", min_length=1)
    repo_url: str = Field(..., alias="repoUrl")
    branch: str = Field(default="main")
    commit_sha: str = Field(default="latest", alias="commitSha")
    build_file: str = Field(..., alias="dockerfile", description="Container build file contents")
    env_vars: dict[str, str] = Field(default_factory=dict, alias="envVars")
    port: int | None = Field(default=None, ge=1, le=65535)

    @property
    def short_commit(self) -> str:
        return self.commit_sha[:7]


@dataclass(frozen=True)
class ImageReference:
    """Named, tagged pointer to a built image."""

    name: str
    tag: str
    image_id: str | None = None

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


class ContainerHandle(BaseModel):
    """A running or stopped container labeled for one deployment."""

    model_config = CAMEL_CASE

    id: str
    name: str = ""
    deployment_id: str
    project_id: str = ""
    status: str = "unknown"
    internal_port: int | None = None
    host_port: int | None = None
    created: datetime | None = None


@dataclass(frozen=True)
class LogChunk:
    """Timestamped fragment of container stdout/stderr."""

    text: str
    timestamp: datetime | None = None

    def __str__(self) -> str:
        if self.timestamp is None:
            return self.text
        return f"{self.timestamp.isoformat()} {self.text}"


class MetricSample(BaseModel):
    """Point-in-time resource usage of a container."""

    model_config = CAMEL_CASE

    cpu: float = 0.0
    memory: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def zero(cls) -> "MetricSample":
        return cls()


class DeploymentRecord(BaseModel):
    """Stored view of a deployment, as kept by the record store."""

    deployment_id: str
    status: DeploymentStatus | None = None
    attempt: str | None = None
    build_logs: str = ""
    error_message: str | None = None
    deploy_url: str | None = None
    container_id: str | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class DeploymentResult(BaseModel):
    """Outcome of a pipeline run returned to the caller."""

    model_config = CAMEL_CASE

    success: bool
    container_id: str | None = None
    host_port: int | None = None
    deploy_url: str | None = None
    error: str | None = None
