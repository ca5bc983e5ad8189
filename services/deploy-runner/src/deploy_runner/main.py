"""Deploy Runner Service - builds repositories into images and runs them as containers."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
import structlog

from deploy_runner import routers
from deploy_runner.build_context import BuildContextAssembler
from deploy_runner.config import Settings, get_settings
from deploy_runner.container_config import RunnerLabels
from deploy_runner.container_manager import ContainerLifecycleManager
from deploy_runner.docker_ops import DockerClientWrapper
from deploy_runner.errors import ContainerNotFoundError, RunnerError
from deploy_runner.health import HealthProber
from deploy_runner.image_builder import ImageBuilder
from deploy_runner.log_streamer import LogStreamer
from deploy_runner.metrics import MetricsCollector
from deploy_runner.orchestrator import DeploymentOrchestrator
from deploy_runner.record_store import RedisDeploymentStore
from deploy_runner.source_fetcher import GitSourceFetcher
from shared.logging_config import setup_logging_from_settings

logger = structlog.get_logger()


def build_orchestrator(settings: Settings, docker_client: DockerClientWrapper, redis: Redis) -> DeploymentOrchestrator:
    """Wire every pipeline component around one engine client and one Redis client."""
    labels = RunnerLabels(settings.label_prefix)
    return DeploymentOrchestrator(
        settings=settings,
        store=RedisDeploymentStore(redis, metric_history_length=settings.metric_history_length),
        fetcher=GitSourceFetcher(access_token=settings.git_access_token),
        assembler=BuildContextAssembler(
            build_file_name=settings.build_file_name,
            excludes=settings.build_context_excludes,
        ),
        builder=ImageBuilder(docker_client, namespace=settings.image_namespace),
        lifecycle=ContainerLifecycleManager(
            docker_client,
            labels=labels,
            container_prefix=settings.container_prefix,
            restart_policy=settings.restart_policy,
            stop_timeout=settings.stop_grace_period_sec,
        ),
        prober=HealthProber(docker_client, timeout=settings.health_check_timeout_sec),
        streamer=LogStreamer(docker_client, default_tail=settings.log_tail_lines),
        metrics=MetricsCollector(docker_client),
        labels=labels,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging_from_settings(settings)

    docker_client = DockerClientWrapper(base_url=settings.docker_url, max_workers=settings.docker_max_workers)
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    app.state.orchestrator = build_orchestrator(settings, docker_client, redis)
    logger.info("deploy_runner_started", host=settings.runner_host, port=settings.runner_port)

    yield

    # Shutdown
    logger.info("shutdown_initiated")
    await redis.aclose()
    docker_client.close()


app = FastAPI(
    title="Deploy Runner",
    description="Builds repositories into container images and runs them",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID", f"req_{uuid.uuid4().hex[:8]}")
    structlog.contextvars.bind_contextvars(
        correlation_id=correlation_id, method=request.method, path=request.url.path
    )

    start = time.time()

    try:
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000

        if response.status_code >= 500:  # noqa: PLR2004
            logger.error(
                "http_request_failed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        else:
            logger.info("http_request", status_code=response.status_code, duration_ms=round(duration_ms, 2))

        return response
    except Exception as e:
        duration_ms = (time.time() - start) * 1000
        logger.error(
            "http_request_exception",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round(duration_ms, 2),
            exc_info=True,
        )
        raise
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(RunnerError)
async def runner_error_handler(request: Request, exc: RunnerError) -> JSONResponse:
    """Map runner failures to JSON errors; unknown containers are 404."""
    if isinstance(exc, ContainerNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("runner_error", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


app.include_router(routers.health.router)
app.include_router(routers.deployments.router)


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("deploy_runner.main:app", host=settings.runner_host, port=settings.runner_port)
