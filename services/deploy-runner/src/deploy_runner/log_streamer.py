"""Container log retrieval: bounded point-in-time tails and live follows."""

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime

import docker
import structlog

from deploy_runner.docker_ops import DockerClientWrapper
from deploy_runner.errors import ContainerNotFoundError
from deploy_runner.models import LogChunk

logger = structlog.get_logger()

DisconnectCheck = Callable[[], Awaitable[bool]]


def parse_log_line(raw: bytes | str) -> LogChunk:
    """Split an engine log line ("<RFC3339Nano> <text>") into a LogChunk."""
    line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    line = line.rstrip("\r\n")
    stamp, sep, text = line.partition(" ")
    if not sep:
        return LogChunk(text=line)
    try:
        # Python only handles microseconds; the engine sends nanoseconds
        base, _, fraction = stamp.rstrip("Z").partition(".")
        timestamp = datetime.fromisoformat(base).replace(
            microsecond=int(fraction[:6].ljust(6, "0")) if fraction else 0, tzinfo=UTC
        )
    except ValueError:
        return LogChunk(text=line)
    return LogChunk(text=text, timestamp=timestamp)


class LogStreamer:
    def __init__(self, docker_client: DockerClientWrapper, default_tail: int = 500):
        self.docker = docker_client
        self.default_tail = default_tail

    async def tail(self, container_id: str, max_lines: int | None = None) -> str:
        """Most recent combined stdout/stderr lines, each prefixed with its timestamp."""
        try:
            raw = await self.docker.container_logs(container_id, tail=max_lines or self.default_tail)
        except docker.errors.NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        except docker.errors.APIError as e:
            logger.warning("container_logs_failed", container_id=container_id, error=str(e))
            return f"Error fetching logs: {e}"
        return raw.decode("utf-8", errors="replace")

    async def follow(
        self,
        container_id: str,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncIterator[LogChunk]:
        """
        Yield log chunks until the container's output ends.

        The stream is open-ended. Closing the iterator, or the consumer
        disconnecting, releases the engine subscription; the container
        itself is untouched.
        """
        lines = self.docker.follow_logs(container_id)
        try:
            logger.info("log_follow_started", container_id=container_id)
            async for raw in lines:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("log_follow_client_disconnected", container_id=container_id)
                    break
                yield parse_log_line(raw)
        except docker.errors.NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        finally:
            await lines.aclose()
            logger.info("log_follow_stopped", container_id=container_id)
