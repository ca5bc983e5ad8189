import asyncio
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Any, Dict, List

import docker
import structlog

logger = structlog.get_logger()

_END = object()


class _StreamFailure:
    def __init__(self, error: BaseException):
        self.error = error


class DockerClientWrapper:
    """
    Async wrapper around blocking docker-py client.

    One instance is created per process and handed to every runner
    component.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: docker.DockerClient | None = None,
        max_workers: int = 8,
    ):
        if client is not None:
            self._client = client
        elif base_url:
            self._client = docker.DockerClient(base_url=base_url)
        else:
            self._client = docker.from_env()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docker")

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def _stream(
        self,
        open_stream: Callable[[], Iterator[Any]],
        close: Callable[[Any], None] | None = None,
    ) -> AsyncIterator[Any]:
        """
        Bridge a blocking engine stream into an async iterator.

        A dedicated reader thread drains the engine stream into a queue; the
        caller consumes the queue. The reader thread is outside the shared
        pool. When the consumer stops, ``close`` is invoked to release the
        underlying subscription.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stream = await self._run(open_stream)
        stopped = threading.Event()

        def emit(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed, nobody is listening any more
                stopped.set()

        def pump() -> None:
            try:
                for item in stream:
                    if stopped.is_set():
                        break
                    emit(item)
            except Exception as e:
                if not stopped.is_set():
                    emit(_StreamFailure(e))
            finally:
                emit(_END)

        threading.Thread(target=pump, name="docker-stream", daemon=True).start()

        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _StreamFailure):
                    raise item.error
                yield item
        finally:
            if not stopped.is_set():
                stopped.set()
                if close is not None:
                    close(stream)

    async def ping(self) -> bool:
        """Check that the engine answers."""
        return await self._run(self._client.ping)

    def build_events(self, fileobj: IO[bytes], tag: str, labels: Dict[str, str]) -> AsyncIterator[dict]:
        """
        Submit a tar build context and yield decoded build events.

        Every event the engine emits is yielded, in order, until the engine
        closes the stream.
        """

        def _open():
            return self._client.api.build(
                fileobj=fileobj,
                custom_context=True,
                tag=tag,
                labels=labels,
                rm=True,  # Remove intermediate containers
                forcerm=True,  # Always remove intermediate containers
                decode=True,
            )

        logger.info("building_image", tag=tag)
        return self._stream(_open)

    async def get_container(self, container_id: str) -> Any:
        """Get a container by ID or name."""
        return await self._run(self._client.containers.get, container_id)

    async def list_containers(self, filters: Dict[str, Any] | None = None, all: bool = False) -> List[Any]:
        """List containers."""
        return await self._run(self._client.containers.list, all=all, filters=filters)

    async def create_container(self, image: str, **kwargs) -> Any:
        """Create (but do not start) a container."""
        return await self._run(self._client.containers.create, image, **kwargs)

    async def start_container(self, container: Any) -> None:
        """Start a created container and refresh its attributes."""
        await self._run(container.start)
        await self._run(container.reload)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container."""
        container = await self.get_container(container_id)
        await self._run(container.stop, timeout=timeout)

    async def remove_container(self, container_id: str, force: bool = False, v: bool = False) -> bool:
        """Remove a container. Returns False when it did not exist."""
        try:
            container = await self.get_container(container_id)
            await self._run(container.remove, force=force, v=v)
            return True
        except docker.errors.NotFound:
            return False

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Inspect a container (fresh attributes)."""
        container = await self.get_container(container_id)
        return container.attrs

    async def container_logs(self, container_id: str, tail: int = 500, timestamps: bool = True) -> bytes:
        """Combined stdout/stderr, most recent ``tail`` lines."""
        container = await self.get_container(container_id)
        return await self._run(container.logs, stdout=True, stderr=True, tail=tail, timestamps=timestamps)

    async def follow_logs(self, container_id: str, tail: int | str = "all") -> AsyncIterator[bytes]:
        """Yield raw log lines as the container writes them.

        Closing the iterator closes the engine subscription.
        """
        container = await self.get_container(container_id)

        def _open():
            return container.logs(
                stdout=True,
                stderr=True,
                stream=True,
                follow=True,
                timestamps=True,
                tail=tail,
            )

        lines = self._stream(_open, close=lambda s: s.close())
        try:
            async for line in lines:
                yield line
        finally:
            await lines.aclose()

    async def container_stats(self, container_id: str) -> Dict[str, Any]:
        """One-shot stats snapshot (includes the previous window's counters)."""
        container = await self.get_container(container_id)
        return await self._run(container.stats, stream=False)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._client.close()
