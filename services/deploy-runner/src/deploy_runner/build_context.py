"""
Build context assembly.

Turns a working tree plus build file text into a tar archive the engine
can build from. The archive lives in a temp directory namespaced by the
deployment id; whoever holds the resulting ``BuildContext`` releases it.
"""

import asyncio
import io
import os
import tarfile
import tempfile
import time
from pathlib import Path
from typing import IO, Iterable

import structlog

from deploy_runner.errors import ContextAssemblyError
from deploy_runner.source_fetcher import remove_tree

logger = structlog.get_logger()

ARCHIVE_NAME = "context.tar"


class BuildContext:
    """Archive of files handed to the engine, backed by temp storage."""

    def __init__(self, root: Path, deployment_id: str, build_file_name: str, entries: list[str]):
        self.root = root
        self.deployment_id = deployment_id
        self.build_file_name = build_file_name
        self.entries = entries
        self._released = False

    @property
    def archive_path(self) -> Path:
        return self.root / ARCHIVE_NAME

    @property
    def source_files(self) -> list[str]:
        """Repository files in the archive, without the supplied build file."""
        return self.entries[1:]

    @property
    def released(self) -> bool:
        return self._released

    def open(self) -> IO[bytes]:
        return self.archive_path.open("rb")

    def release(self) -> None:
        """Remove temp storage. Safe to call more than once; removes only once."""
        if self._released:
            return
        self._released = True
        remove_tree(self.root)
        logger.debug("build_context_released", deployment_id=self.deployment_id, path=str(self.root))

    def __enter__(self) -> "BuildContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class BuildContextAssembler:
    """Packs a working tree and a build file into a ``BuildContext``."""

    def __init__(
        self,
        build_file_name: str = "Dockerfile",
        excludes: Iterable[str] = (".git", "node_modules"),
        temp_root: str | None = None,
    ):
        self.build_file_name = build_file_name
        self.excludes = frozenset(excludes)
        self.temp_root = temp_root

    def list_files(self, tree: Path) -> list[str]:
        """Relative POSIX paths of every file in the tree, in stable order.

        Excluded directory names are pruned at any depth. A build file at the
        root of the tree is superseded by the supplied one.
        """
        files: list[str] = []

        def _unreadable(error: OSError) -> None:
            path = Path(error.filename or tree)
            relative = path.relative_to(tree).as_posix() if path != tree else "."
            raise ContextAssemblyError(relative, error.strerror or str(error)) from error

        for dirpath, dirnames, filenames in os.walk(tree, onerror=_unreadable):
            dirnames[:] = sorted(d for d in dirnames if d not in self.excludes)
            for filename in sorted(filenames):
                relative = Path(dirpath, filename).relative_to(tree).as_posix()
                if relative == self.build_file_name:
                    continue
                files.append(relative)
        return files

    def _write_archive(self, archive_path: Path, tree: Path, build_file: str, files: list[str]) -> None:
        now = time.time()
        with tarfile.open(archive_path, mode="w") as tar:
            content = build_file.encode("utf-8")
            info = tarfile.TarInfo(name=self.build_file_name)
            info.size = len(content)
            info.mode = 0o644
            info.mtime = now
            tar.addfile(info, io.BytesIO(content))

            for relative in files:
                path = tree / relative
                try:
                    stat = path.stat()
                    data = path.read_bytes()
                except OSError as e:
                    raise ContextAssemblyError(relative, e.strerror or str(e)) from e
                info = tarfile.TarInfo(name=relative)
                info.size = len(data)
                info.mode = stat.st_mode & 0o777
                info.mtime = stat.st_mtime
                tar.addfile(info, io.BytesIO(data))

    def assemble_sync(self, tree: Path, build_file: str, deployment_id: str) -> BuildContext:
        root = Path(tempfile.mkdtemp(prefix=f"deploy-runner-build-{deployment_id}-", dir=self.temp_root))
        try:
            files = self.list_files(tree)
            self._write_archive(root / ARCHIVE_NAME, tree, build_file, files)
        except BaseException:
            remove_tree(root)
            raise
        logger.info("build_context_assembled", deployment_id=deployment_id, files=len(files))
        return BuildContext(root, deployment_id, self.build_file_name, [self.build_file_name, *files])

    async def assemble(self, tree: Path, build_file: str, deployment_id: str) -> BuildContext:
        """Assemble off the event loop. Raises ContextAssemblyError on any unreadable file.

        The worker thread cannot be interrupted. If the caller is cancelled
        first, the context it produces is released once the thread finishes.
        """
        task = asyncio.ensure_future(asyncio.to_thread(self.assemble_sync, tree, build_file, deployment_id))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_release_orphaned)
            raise


def _release_orphaned(task: "asyncio.Future[BuildContext]") -> None:
    if task.cancelled() or task.exception() is not None:
        return
    context = task.result()
    logger.info("build_context_orphaned", deployment_id=context.deployment_id)
    context.release()
