from unittest.mock import AsyncMock, MagicMock

import docker
import pytest

from deploy_runner.container_config import ResourceLimits, RunnerLabels
from deploy_runner.container_manager import ContainerLifecycleManager
from deploy_runner.errors import RunError
from deploy_runner.models import ImageReference

IMAGE = ImageReference("deploy-runner/d1", "abc1234")


def make_container(container_id="c-1", name="deploy-runner-d1", host_port="49153", port=3000):
    container = MagicMock()
    container.id = container_id
    container.name = name
    container.status = "running"
    container.labels = {
        "deploy-runner.deployment": "d1",
        "deploy-runner.project": "p1",
        "deploy-runner.port": str(port),
    }
    container.attrs = {
        "Created": "2024-05-01T10:00:00.123456789Z",
        "NetworkSettings": {"Ports": {f"{port}/tcp": [{"HostIp": "0.0.0.0", "HostPort": host_port}]}},
    }
    return container


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.remove_container = AsyncMock(return_value=False)
    client.create_container = AsyncMock(return_value=make_container())
    client.start_container = AsyncMock()
    client.stop_container = AsyncMock()
    client.list_containers = AsyncMock(return_value=[])
    return client


@pytest.fixture
def manager(docker_client):
    return ContainerLifecycleManager(docker_client, labels=RunnerLabels("deploy-runner"))


class TestRun:
    @pytest.mark.asyncio
    async def test_run_creates_labeled_container(self, manager, docker_client):
        handle = await manager.run(
            IMAGE, "d1", "p1", 3000, env_vars={"NODE_ENV": "production"}, limits=ResourceLimits("1Gi", 512)
        )

        kwargs = docker_client.create_container.call_args.kwargs
        assert kwargs["image"] == "deploy-runner/d1:abc1234"
        assert kwargs["name"] == "deploy-runner-d1"
        assert kwargs["environment"] == ["NODE_ENV=production"]
        assert kwargs["ports"] == {"3000/tcp": None}
        assert kwargs["mem_limit"] == 1024**3
        assert kwargs["cpu_shares"] == 512
        assert kwargs["labels"]["deploy-runner.deployment"] == "d1"

        assert handle.id == "c-1"
        assert handle.deployment_id == "d1"
        assert handle.project_id == "p1"
        assert handle.internal_port == 3000
        assert handle.host_port == 49153
        assert handle.created.year == 2024

    @pytest.mark.asyncio
    async def test_run_twice_removes_previous_container(self, manager, docker_client):
        """Second run for the same deployment must remove the first container before creating."""
        alive: set[str] = set()
        calls: list[str] = []

        async def remove(name, force=False, v=False):
            calls.append("remove")
            existed = name in alive
            alive.discard(name)
            return existed

        async def create(**kwargs):
            calls.append("create")
            alive.add(kwargs["name"])
            return make_container(name=kwargs["name"])

        docker_client.remove_container.side_effect = remove
        docker_client.create_container.side_effect = create

        await manager.run(IMAGE, "d1", "p1", 3000)
        await manager.run(IMAGE, "d1", "p1", 3000)

        assert calls == ["remove", "create", "remove", "create"]
        assert alive == {"deploy-runner-d1"}

    @pytest.mark.asyncio
    async def test_missing_image_raises_run_error(self, manager, docker_client):
        docker_client.create_container.side_effect = docker.errors.ImageNotFound("no such image")

        with pytest.raises(RunError, match="Image not found"):
            await manager.run(IMAGE, "d1", "p1", 3000)

    @pytest.mark.asyncio
    async def test_start_failure_removes_created_container(self, manager, docker_client):
        docker_client.start_container.side_effect = docker.errors.APIError("port is already allocated")

        with pytest.raises(RunError, match="port is already allocated"):
            await manager.run(IMAGE, "d1", "p1", 3000)

        docker_client.remove_container.assert_any_await("c-1", force=True)


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_then_remove(self, manager, docker_client):
        assert await manager.stop("c-1") is True
        docker_client.stop_container.assert_awaited_once_with("c-1", timeout=10)
        docker_client.remove_container.assert_awaited_once_with("c-1")

    @pytest.mark.asyncio
    async def test_stop_unknown_container_returns_false(self, manager, docker_client):
        docker_client.stop_container.side_effect = docker.errors.NotFound("no such container")

        assert await manager.stop("missing") is False


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_list_filters_by_runner_label(self, manager, docker_client):
        docker_client.list_containers.return_value = [make_container(), make_container("c-2")]

        handles = await manager.list()

        assert [h.id for h in handles] == ["c-1", "c-2"]
        docker_client.list_containers.assert_awaited_once_with(
            filters={"label": ["deploy-runner.deployment"]}, all=True
        )

    @pytest.mark.asyncio
    async def test_find_by_deployment(self, manager, docker_client):
        docker_client.list_containers.return_value = [make_container()]

        handle = await manager.find("d1")

        assert handle.id == "c-1"
        docker_client.list_containers.assert_awaited_once_with(
            filters={"label": ["deploy-runner.deployment=d1"]}, all=True
        )

    @pytest.mark.asyncio
    async def test_find_returns_none_without_container(self, manager):
        assert await manager.find("nope") is None
