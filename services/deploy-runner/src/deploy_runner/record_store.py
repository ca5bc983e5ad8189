"""Deployment record store.

Holds status, build logs and metric samples for deployments. The runner
only writes status transitions and log text and reads them back for the
HTTP surface.

Redis layout:
    deployment:{id}             hash   status, attempt, error_message, deploy_url, container_id, timestamps
    deployment:{id}:build_logs  string appended fragment by fragment
    deployment:{id}:history     list   every recorded status, in order
    metrics:{project_id}:{type} list   JSON samples, newest first, bounded

Every pipeline run owns an attempt token written at PENDING. Automatic
transitions go through ``advance``, which only writes while the record still
belongs to that attempt and is not CANCELED.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import WatchError
import structlog

from deploy_runner.models import DeploymentRecord, DeploymentStatus

logger = structlog.get_logger()


class DeploymentRecordStore(Protocol):
    async def get(self, deployment_id: str) -> DeploymentRecord | None: ...

    async def get_status(self, deployment_id: str) -> DeploymentStatus | None: ...

    async def start_attempt(self, deployment_id: str) -> str: ...

    async def advance(
        self,
        deployment_id: str,
        attempt: str,
        status: DeploymentStatus,
        *,
        error_message: str | None = None,
        deploy_url: str | None = None,
        container_id: str | None = None,
        build_logs: str | None = None,
    ) -> bool: ...

    async def set_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        *,
        error_message: str | None = None,
        deploy_url: str | None = None,
        container_id: str | None = None,
        build_logs: str | None = None,
    ) -> None: ...

    async def append_build_logs(self, deployment_id: str, text: str) -> None: ...

    async def set_build_logs(self, deployment_id: str, text: str) -> None: ...

    async def status_history(self, deployment_id: str) -> list[DeploymentStatus]: ...

    async def record_metric(self, project_id: str, metric_type: str, value: float, unit: str) -> None: ...


def _status_mapping(
    status: DeploymentStatus,
    error_message: str | None,
    deploy_url: str | None,
    container_id: str | None,
) -> dict[str, str]:
    now = datetime.now(UTC).isoformat()
    mapping = {"status": status.value, "updated_at": now}
    if status.is_terminal:
        mapping["completed_at"] = now
    if error_message is not None:
        mapping["error_message"] = error_message
    if deploy_url is not None:
        mapping["deploy_url"] = deploy_url
    if container_id is not None:
        mapping["container_id"] = container_id
    return mapping


class RedisDeploymentStore:
    """Record store backed by Redis (client must use decode_responses=True)."""

    def __init__(self, redis_client: redis.Redis, metric_history_length: int = 1000):
        self.redis = redis_client
        self.metric_history_length = metric_history_length

    @staticmethod
    def _key(deployment_id: str) -> str:
        return f"deployment:{deployment_id}"

    async def get(self, deployment_id: str) -> DeploymentRecord | None:
        key = self._key(deployment_id)
        fields = await self.redis.hgetall(key)
        build_logs = await self.redis.get(f"{key}:build_logs")
        if not fields and build_logs is None:
            return None
        return DeploymentRecord(
            deployment_id=deployment_id,
            status=fields.get("status"),
            attempt=fields.get("attempt"),
            build_logs=build_logs or "",
            error_message=fields.get("error_message"),
            deploy_url=fields.get("deploy_url"),
            container_id=fields.get("container_id"),
            updated_at=fields.get("updated_at"),
            completed_at=fields.get("completed_at"),
        )

    async def get_status(self, deployment_id: str) -> DeploymentStatus | None:
        status = await self.redis.hget(self._key(deployment_id), "status")
        return DeploymentStatus(status) if status else None

    async def start_attempt(self, deployment_id: str) -> str:
        """
        Reset the record to PENDING under a fresh attempt token and return it.

        Fields and build logs of any earlier attempt are dropped; the status
        history is kept.
        """
        key = self._key(deployment_id)
        attempt = uuid.uuid4().hex
        mapping = _status_mapping(DeploymentStatus.PENDING, None, None, None)
        mapping["attempt"] = attempt

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key, f"{key}:build_logs")
            pipe.hset(key, mapping=mapping)
            pipe.rpush(f"{key}:history", DeploymentStatus.PENDING.value)
            await pipe.execute()

        logger.info("deployment_attempt_started", deployment_id=deployment_id, attempt=attempt)
        return attempt

    async def _read_state(self, pipe, key: str) -> tuple[str | None, str | None]:
        status, attempt = await pipe.hmget(key, "status", "attempt")
        return status, attempt

    async def advance(
        self,
        deployment_id: str,
        attempt: str,
        status: DeploymentStatus,
        *,
        error_message: str | None = None,
        deploy_url: str | None = None,
        container_id: str | None = None,
        build_logs: str | None = None,
    ) -> bool:
        """
        Record ``status`` for ``attempt`` as one check-and-set.

        Returns False, writing nothing, when the record reads CANCELED or a
        newer attempt has replaced ``attempt``. A concurrent write to the
        record between the check and the write makes the check run again.
        """
        key = self._key(deployment_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current_status, current_attempt = await self._read_state(pipe, key)
                    if current_status == DeploymentStatus.CANCELED.value or current_attempt != attempt:
                        logger.info(
                            "deployment_transition_refused",
                            deployment_id=deployment_id,
                            status=status.value,
                            current_status=current_status,
                        )
                        return False

                    pipe.multi()
                    pipe.hset(key, mapping=_status_mapping(status, error_message, deploy_url, container_id))
                    pipe.rpush(f"{key}:history", status.value)
                    if build_logs is not None:
                        pipe.set(f"{key}:build_logs", build_logs)
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug("deployment_transition_retry", deployment_id=deployment_id, status=status.value)
                    continue

        logger.info("deployment_status_recorded", deployment_id=deployment_id, status=status.value)
        return True

    async def set_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        *,
        error_message: str | None = None,
        deploy_url: str | None = None,
        container_id: str | None = None,
        build_logs: str | None = None,
    ) -> None:
        """Record ``status`` unconditionally (used for CANCELED)."""
        key = self._key(deployment_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=_status_mapping(status, error_message, deploy_url, container_id))
            pipe.rpush(f"{key}:history", status.value)
            if build_logs is not None:
                pipe.set(f"{key}:build_logs", build_logs)
            await pipe.execute()

        logger.info("deployment_status_recorded", deployment_id=deployment_id, status=status.value)
    async def append_build_logs(self, deployment_id: str, text: str) -> None:
        await self.redis.append(f"{self._key(deployment_id)}:build_logs", text)

    async def set_build_logs(self, deployment_id: str, text: str) -> None:
        await self.redis.set(f"{self._key(deployment_id)}:build_logs", text)

    async def status_history(self, deployment_id: str) -> list[DeploymentStatus]:
        values = await self.redis.lrange(f"{self._key(deployment_id)}:history", 0, -1)
        return [DeploymentStatus(v) for v in values]

    async def record_metric(self, project_id: str, metric_type: str, value: float, unit: str) -> None:
        key = f"metrics:{project_id}:{metric_type}"
        sample = {"value": value, "unit": unit, "timestamp": datetime.now(UTC).isoformat()}
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, json.dumps(sample))
            pipe.ltrim(key, 0, self.metric_history_length - 1)
            await pipe.execute()

    async def recent_metrics(self, project_id: str, metric_type: str, limit: int = 100) -> list[dict]:
        values = await self.redis.lrange(f"metrics:{project_id}:{metric_type}", 0, limit - 1)
        return [json.loads(v) for v in values]
