"""
ImageBuilder - submits build contexts to the engine and captures build logs.

Responsibilities:
- Derive a deterministic image tag per deployment and commit
- Drain the engine's build event stream completely, even after an error event
- Accumulate build logs and forward each fragment live to a sink
- Release the build context's temp storage on every exit path
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Dict

import docker
import structlog

from deploy_runner.build_context import BuildContext
from deploy_runner.container_config import image_name
from deploy_runner.docker_ops import DockerClientWrapper
from deploy_runner.errors import BuildError
from deploy_runner.models import ImageReference

logger = structlog.get_logger()

LogSink = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class BuildResult:
    image: ImageReference
    logs: str


class BuildLog:
    """Accumulates build output and forwards every fragment to a live sink.

    The accumulated text is what ends up in the final record; forwarding is
    best-effort and never interrupts draining.
    """

    def __init__(self, sink: LogSink | None = None):
        self._sink = sink
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def write(self, fragment: str) -> None:
        self._parts.append(fragment)
        if self._sink is None:
            return
        try:
            result = self._sink(fragment)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("build_log_forward_failed", error=str(e))


class ImageBuilder:
    """
    Builds deployment images from assembled contexts.

    Usage:
        builder = ImageBuilder(docker_client, namespace="deploy-runner")
        image = builder.reference_for("d1", "abc1234def")
        await builder.build(context, image, labels, on_log=print)
    """

    def __init__(self, docker_client: DockerClientWrapper, namespace: str = "deploy-runner"):
        self.docker = docker_client
        self.namespace = namespace

    def reference_for(self, deployment_id: str, commit_sha: str) -> ImageReference:
        """Tag is the first 7 characters of the commit: traceable, distinct per commit."""
        return ImageReference(name=image_name(self.namespace, deployment_id), tag=commit_sha[:7].lower())

    async def build(
        self,
        context: BuildContext,
        image: ImageReference,
        labels: Dict[str, str],
        on_log: LogSink | None = None,
    ) -> BuildResult:
        """
        Build ``image`` from ``context``.

        Raises:
            BuildError: engine rejected the build or reported an error event.
                Carries the accumulated logs.
        """
        log = BuildLog(on_log)
        errors: list[str] = []
        image_id: str | None = None

        with context:
            await log.write("Starting Docker build...\n")
            logger.info(
                "image_build_started",
                deployment_id=context.deployment_id,
                image=str(image),
                files=len(context.entries),
            )
            try:
                with context.open() as fileobj:
                    async for event in self.docker.build_events(fileobj, str(image), labels):
                        if "stream" in event:
                            await log.write(event["stream"])
                        if "error" in event:
                            # Keep draining: the engine must finish the stream
                            errors.append(event["error"])
                            await log.write(f"ERROR: {event['error']}\n")
                        aux = event.get("aux")
                        if isinstance(aux, dict) and "ID" in aux:
                            image_id = aux["ID"]
            except (docker.errors.DockerException, OSError) as e:
                await log.write(f"ERROR: {e}\n")
                logger.error("image_build_failed", deployment_id=context.deployment_id, error=str(e))
                raise BuildError(f"Image build failed: {e}", log.text) from e

        if errors:
            logger.error(
                "image_build_failed",
                deployment_id=context.deployment_id,
                error=errors[0],
                error_count=len(errors),
            )
            raise BuildError(f"Image build failed: {errors[0]}", log.text)

        await log.write("Build complete!\n")
        logger.info("image_built", deployment_id=context.deployment_id, image=str(image), image_id=image_id)
        return BuildResult(
            image=ImageReference(name=image.name, tag=image.tag, image_id=image_id),
            logs=log.text,
        )
