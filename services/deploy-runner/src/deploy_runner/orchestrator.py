"""
DeploymentOrchestrator - drives one deployment through its state machine.

PENDING -> BUILDING -> DEPLOYING -> SUCCESS | FAILED, with CANCELED
reachable from every non-terminal state. Each pipeline run is independent;
isolation between concurrent runs comes from namespacing every temp dir,
image tag and container by deployment id.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import ExitStack
from typing import List

import structlog

from deploy_runner.build_context import BuildContextAssembler
from deploy_runner.config import Settings
from deploy_runner.container_config import ResourceLimits, RunnerLabels
from deploy_runner.container_manager import ContainerLifecycleManager
from deploy_runner.errors import BuildError, ContainerNotFoundError, RunError
from deploy_runner.health import HealthProber
from deploy_runner.image_builder import BuildLog, ImageBuilder
from deploy_runner.log_streamer import DisconnectCheck, LogStreamer
from deploy_runner.metrics import MetricsCollector
from deploy_runner.models import (
    ContainerHandle,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    LogChunk,
    MetricSample,
)
from deploy_runner.port_resolution import resolve_port
from deploy_runner.record_store import DeploymentRecordStore
from deploy_runner.source_fetcher import SourceFetcher

logger = structlog.get_logger()

CANCELED_MESSAGE = "Deployment canceled"


class DeploymentCanceled(Exception):
    """Raised inside a pipeline run once its attempt may no longer write.

    That is when the stored status reads CANCELED or a newer attempt for the
    same deployment id has started.
    """


class DeploymentOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: DeploymentRecordStore,
        fetcher: SourceFetcher,
        assembler: BuildContextAssembler,
        builder: ImageBuilder,
        lifecycle: ContainerLifecycleManager,
        prober: HealthProber,
        streamer: LogStreamer,
        metrics: MetricsCollector,
        labels: RunnerLabels | None = None,
    ):
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.assembler = assembler
        self.builder = builder
        self.lifecycle = lifecycle
        self.prober = prober
        self.streamer = streamer
        self.metrics = metrics
        self.labels = labels or RunnerLabels(settings.label_prefix)

    def external_url(self, project_id: str) -> str:
        return self.settings.external_url_template.format(project_id=project_id)

    async def _advance(self, deployment_id: str, attempt: str, status: DeploymentStatus, **fields) -> None:
        """Record the next transition unless the attempt was canceled or replaced meanwhile."""
        if not await self.store.advance(deployment_id, attempt, status, **fields):
            raise DeploymentCanceled(deployment_id)
        logger.info("deployment_transition", status=status.value)

    async def _fail(self, deployment_id: str, attempt: str, message: str, build_logs: str | None) -> None:
        """Record FAILED. Never raises: a failure to record is logged instead."""
        try:
            await self.store.advance(
                deployment_id, attempt, DeploymentStatus.FAILED, error_message=message, build_logs=build_logs
            )
        except Exception as e:
            logger.error("deployment_failure_not_recorded", error=str(e), original_error=message)

    async def deploy(self, request: DeploymentRequest, timeout: float | None = None) -> DeploymentResult:
        """
        Run the full pipeline for one request. Never raises.

        Every call starts a new attempt at PENDING, including a redeploy of a
        canceled or finished deployment id. With ``timeout`` set, the run is
        cancelled on expiry and FAILED is recorded.
        """
        deployment_id = request.deployment_id
        with structlog.contextvars.bound_contextvars(
            deployment_id=deployment_id, project_id=request.project_id
        ):
            try:
                attempt = await self.store.start_attempt(deployment_id)
            except Exception as e:
                logger.error("deployment_not_started", error=str(e), error_type=type(e).__name__)
                return DeploymentResult(success=False, error=str(e))
            logger.info("deployment_transition", status=DeploymentStatus.PENDING.value, attempt=attempt)

            if timeout is None:
                return await self._run(request, attempt)
            try:
                return await asyncio.wait_for(self._run(request, attempt), timeout=timeout)
            except TimeoutError:
                message = f"Deployment timed out after {timeout:g}s"
                logger.error("deployment_timed_out", timeout=timeout)
                await self._fail(deployment_id, attempt, message, None)
                return DeploymentResult(success=False, error=message)

    async def run_with_timeout(self, request: DeploymentRequest, timeout: float | None = None) -> DeploymentResult:
        """Run ``deploy`` under the overall pipeline ceiling."""
        return await self.deploy(
            request, timeout=timeout if timeout is not None else self.settings.pipeline_timeout_sec
        )

    async def _run(self, request: DeploymentRequest, attempt: str) -> DeploymentResult:
        deployment_id = request.deployment_id
        log = BuildLog(lambda fragment: self.store.append_build_logs(deployment_id, fragment))
        handle: ContainerHandle | None = None

        try:
            await self._advance(deployment_id, attempt, DeploymentStatus.BUILDING)

            await log.write("Cloning repository...\n")
            with ExitStack() as cleanup:
                async with self.fetcher.checkout(
                    request.repo_url, request.branch, request.commit_sha, deployment_id
                ) as tree:
                    await log.write("Repository cloned successfully\n")
                    context = cleanup.enter_context(
                        await self.assembler.assemble(tree, request.build_file, deployment_id)
                    )

                await log.write(f"Found {len(context.source_files)} files\n")

                image = self.builder.reference_for(deployment_id, request.commit_sha)
                try:
                    result = await self.builder.build(
                        context,
                        image,
                        self.labels.for_image(deployment_id, request.project_id, request.commit_sha),
                        on_log=log.write,
                    )
                except BuildError as e:
                    await self._fail(deployment_id, attempt, str(e), log.text)
                    return DeploymentResult(success=False, error=str(e))

            await self._advance(deployment_id, attempt, DeploymentStatus.DEPLOYING, build_logs=log.text)

            port = resolve_port(request, default=self.settings.default_port)
            try:
                handle = await self.lifecycle.run(
                    result.image,
                    deployment_id,
                    request.project_id,
                    port,
                    env_vars=request.env_vars,
                    limits=ResourceLimits(
                        memory=self.settings.default_memory_limit,
                        cpu_shares=self.settings.default_cpu_shares,
                    ),
                )
            except RunError as e:
                await self._fail(deployment_id, attempt, str(e), log.text)
                return DeploymentResult(success=False, error=str(e))

            # Fixed settle delay, single probe attempt
            await asyncio.sleep(self.settings.settle_delay_sec)
            healthy = await self.prober.check(handle.id, self.settings.health_check_path, port)
            if not healthy:
                logger.warning(
                    "health_check_failed_deployment_continues",
                    container_id=handle.id,
                    port=port,
                    path=self.settings.health_check_path,
                )

            deploy_url = self.external_url(request.project_id)
            await self._advance(
                deployment_id,
                attempt,
                DeploymentStatus.SUCCESS,
                deploy_url=deploy_url,
                container_id=handle.id,
            )
            logger.info("deployment_succeeded", container_id=handle.id, deploy_url=deploy_url)
            return DeploymentResult(
                success=True,
                container_id=handle.id,
                host_port=handle.host_port,
                deploy_url=deploy_url,
            )

        except DeploymentCanceled:
            logger.info("deployment_canceled_pipeline_stopped")
            if handle is not None:
                await self.lifecycle.stop(handle.id)
            return DeploymentResult(success=False, error=CANCELED_MESSAGE)
        except Exception as e:
            logger.error("deployment_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            await self._fail(deployment_id, attempt, str(e), log.text)
            return DeploymentResult(success=False, error=str(e))

    async def cancel(self, deployment_id: str) -> bool:
        """
        Stop the deployment's container (if any) and record CANCELED.

        Returns False when there was nothing to cancel: no container was
        stopped and the deployment is unknown or already terminal.
        """
        handle = await self.lifecycle.find(deployment_id)
        stopped = await self.lifecycle.stop(handle.id) if handle is not None else False

        status = await self.store.get_status(deployment_id)
        active = status is not None and not status.is_terminal
        if not (active or stopped):
            logger.info("deployment_cancel_noop", deployment_id=deployment_id, status=status)
            return False

        await self.store.set_status(deployment_id, DeploymentStatus.CANCELED)
        logger.info("deployment_canceled", deployment_id=deployment_id, container_stopped=stopped)
        return True

    async def logs(self, deployment_id: str) -> str:
        """
        Live container logs, falling back to the stored build logs.

        Raises:
            ContainerNotFoundError: neither a container nor a record exists.
        """
        handle = await self.lifecycle.find(deployment_id)
        if handle is not None:
            try:
                return await self.streamer.tail(handle.id, self.settings.log_tail_lines)
            except ContainerNotFoundError:
                logger.info("container_vanished_using_build_logs", deployment_id=deployment_id)

        record = await self.store.get(deployment_id)
        if record is None:
            raise ContainerNotFoundError(deployment_id)
        return record.build_logs

    async def follow(
        self, deployment_id: str, is_disconnected: DisconnectCheck | None = None
    ) -> AsyncIterator[LogChunk]:
        handle = await self.lifecycle.find(deployment_id)
        if handle is None:
            raise ContainerNotFoundError(deployment_id)
        return self.streamer.follow(handle.id, is_disconnected)

    async def stats(self, deployment_id: str) -> MetricSample:
        """Sample usage and record CPU and memory as metric history."""
        handle = await self.lifecycle.find(deployment_id)
        if handle is None:
            raise ContainerNotFoundError(deployment_id)

        sample = await self.metrics.sample(handle.id)
        project_id = handle.project_id or deployment_id
        await self.store.record_metric(project_id, "CPU_USAGE", sample.cpu, "percent")
        await self.store.record_metric(project_id, "MEMORY_USAGE", sample.memory, "percent")
        return sample

    async def list_deployments(self) -> List[ContainerHandle]:
        return await self.lifecycle.list()
