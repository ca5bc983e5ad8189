from unittest.mock import MagicMock, patch

import docker
import pytest

from deploy_runner.docker_ops import DockerClientWrapper


class FakeLogStream:
    def __init__(self, lines):
        self._lines = lines
        self.close = MagicMock()

    def __iter__(self):
        return iter(self._lines)


@pytest.fixture
def mock_docker():
    with patch("docker.from_env") as mock:
        yield mock


@pytest.fixture
def client_mock(mock_docker):
    client = MagicMock()
    mock_docker.return_value = client
    return client


@pytest.mark.asyncio
async def test_create_container(client_mock):
    container_mock = MagicMock()
    client_mock.containers.create.return_value = container_mock

    wrapper = DockerClientWrapper()
    res = await wrapper.create_container("image:latest", name="deploy-runner-d1")

    assert res == container_mock
    client_mock.containers.create.assert_called_once_with("image:latest", name="deploy-runner-d1")


@pytest.mark.asyncio
async def test_injected_client_skips_discovery(mock_docker):
    injected = MagicMock()

    wrapper = DockerClientWrapper(client=injected)
    await wrapper.ping()

    mock_docker.assert_not_called()
    injected.ping.assert_called_once()


@pytest.mark.asyncio
async def test_remove_container(client_mock):
    container_mock = MagicMock()
    client_mock.containers.get.return_value = container_mock

    wrapper = DockerClientWrapper()
    removed = await wrapper.remove_container("test-id", force=True)

    assert removed is True
    client_mock.containers.get.assert_called_once_with("test-id")
    container_mock.remove.assert_called_once_with(force=True, v=False)


@pytest.mark.asyncio
async def test_remove_missing_container_returns_false(client_mock):
    client_mock.containers.get.side_effect = docker.errors.NotFound("gone")

    wrapper = DockerClientWrapper()

    assert await wrapper.remove_container("missing") is False


@pytest.mark.asyncio
async def test_start_container_refreshes_attrs(client_mock):
    container_mock = MagicMock()

    wrapper = DockerClientWrapper()
    await wrapper.start_container(container_mock)

    container_mock.start.assert_called_once()
    container_mock.reload.assert_called_once()


class TestBuildEvents:
    @pytest.mark.asyncio
    async def test_yields_every_event_in_order(self, client_mock):
        events = [{"stream": "Step 1/2\n"}, {"error": "boom"}, {"stream": "trailing\n"}]
        client_mock.api.build.return_value = iter(events)

        wrapper = DockerClientWrapper()
        received = [e async for e in wrapper.build_events(MagicMock(), "ns/d1:abc1234", {"k": "v"})]

        assert received == events
        kwargs = client_mock.api.build.call_args.kwargs
        assert kwargs["custom_context"] is True
        assert kwargs["decode"] is True
        assert kwargs["tag"] == "ns/d1:abc1234"
        assert kwargs["labels"] == {"k": "v"}

    @pytest.mark.asyncio
    async def test_stream_failure_is_raised_to_consumer(self, client_mock):
        def broken():
            yield {"stream": "ok\n"}
            raise docker.errors.APIError("connection dropped")

        client_mock.api.build.return_value = broken()

        wrapper = DockerClientWrapper()
        received = []
        with pytest.raises(docker.errors.APIError):
            async for event in wrapper.build_events(MagicMock(), "t", {}):
                received.append(event)

        assert received == [{"stream": "ok\n"}]


class TestFollowLogs:
    @pytest.mark.asyncio
    async def test_closes_engine_stream_when_consumer_stops(self, client_mock):
        stream = FakeLogStream([b"line one\n", b"line two\n", b"line three\n"])
        container_mock = MagicMock()
        container_mock.logs.return_value = stream
        client_mock.containers.get.return_value = container_mock

        wrapper = DockerClientWrapper()
        lines = wrapper.follow_logs("c-1")
        first = await lines.__anext__()
        await lines.aclose()

        assert first == b"line one\n"
        stream.close.assert_called_once()
        kwargs = container_mock.logs.call_args.kwargs
        assert kwargs["follow"] is True
        assert kwargs["stream"] is True
        assert kwargs["timestamps"] is True


@pytest.mark.asyncio
async def test_container_stats_is_single_snapshot(client_mock):
    container_mock = MagicMock()
    container_mock.stats.return_value = {"cpu_stats": {}}
    client_mock.containers.get.return_value = container_mock

    wrapper = DockerClientWrapper()
    stats = await wrapper.container_stats("c-1")

    assert stats == {"cpu_stats": {}}
    container_mock.stats.assert_called_once_with(stream=False)
