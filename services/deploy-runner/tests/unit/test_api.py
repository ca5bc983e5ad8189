"""Tests for the runner HTTP surface."""

from unittest.mock import AsyncMock, MagicMock

from httpx import ASGITransport, AsyncClient
import pytest

from deploy_runner.errors import ContainerNotFoundError
from deploy_runner.main import app
from deploy_runner.models import ContainerHandle, DeploymentResult, LogChunk, MetricSample

DEPLOY_BODY = {
    "deploymentId": "d1",
    "projectId": "p1",
    "repoUrl": "https://github.com/acme/app",
    "branch": "main",
    "commitSha": "abc1234",
    "dockerfile": "FROM node:20\n",
    "envVars": {"NODE_ENV": "production"},
    "port": 3000,
}


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    app.state.orchestrator = mock
    yield mock
    del app.state.orchestrator


@pytest.fixture
async def client(orchestrator):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestDeploy:
    @pytest.mark.asyncio
    async def test_success(self, client, orchestrator):
        orchestrator.run_with_timeout = AsyncMock(
            return_value=DeploymentResult(
                success=True, container_id="c-1", host_port=49153, deploy_url="https://p1.example.app"
            )
        )

        response = await client.post("/deploy", json=DEPLOY_BODY)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "containerId": "c-1",
            "hostPort": 49153,
            "deployUrl": "https://p1.example.app",
        }
        request = orchestrator.run_with_timeout.call_args.args[0]
        assert request.deployment_id == "d1"
        assert request.build_file == "FROM node:20\n"
        assert request.env_vars == {"NODE_ENV": "production"}

    @pytest.mark.asyncio
    async def test_failure_is_500(self, client, orchestrator):
        orchestrator.run_with_timeout = AsyncMock(
            return_value=DeploymentResult(success=False, error="Image build failed: boom")
        )

        response = await client.post("/deploy", json=DEPLOY_BODY)

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Image build failed: boom"}

    @pytest.mark.asyncio
    async def test_defaults_for_branch_and_commit(self, client, orchestrator):
        orchestrator.run_with_timeout = AsyncMock(return_value=DeploymentResult(success=True))
        body = {k: v for k, v in DEPLOY_BODY.items() if k not in ("branch", "commitSha", "port")}

        await client.post("/deploy", json=body)

        request = orchestrator.run_with_timeout.call_args.args[0]
        assert request.branch == "main"
        assert request.commit_sha == "latest"
        assert request.port is None

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, client):
        response = await client.post("/deploy", json={"deploymentId": "d1"})
        assert response.status_code == 422


class TestLogs:
    @pytest.mark.asyncio
    async def test_logs(self, client, orchestrator):
        orchestrator.logs = AsyncMock(return_value="ready\n")

        response = await client.get("/logs/d1")

        assert response.status_code == 200
        assert response.json() == {"logs": "ready\n"}

    @pytest.mark.asyncio
    async def test_unknown_deployment_is_404(self, client, orchestrator):
        orchestrator.logs = AsyncMock(side_effect=ContainerNotFoundError("ghost"))

        response = await client.get("/logs/ghost")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Container not found: ghost"}

    @pytest.mark.asyncio
    async def test_stream_sends_sse_frames(self, client, orchestrator):
        async def chunks():
            yield LogChunk("server started")
            yield LogChunk("GET / 200")

        orchestrator.follow = AsyncMock(return_value=chunks())

        response = await client.get("/logs/d1/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text == "data: server started\n\ndata: GET / 200\n\n"
        assert "is_disconnected" in orchestrator.follow.call_args.kwargs

    @pytest.mark.asyncio
    async def test_stream_without_container_is_404(self, client, orchestrator):
        orchestrator.follow = AsyncMock(side_effect=ContainerNotFoundError("ghost"))

        response = await client.get("/logs/ghost/stream")

        assert response.status_code == 404


@pytest.mark.asyncio
async def test_stats(client, orchestrator):
    orchestrator.stats = AsyncMock(return_value=MetricSample(cpu=12.5, memory=40.0, network_rx=10, network_tx=5))

    response = await client.get("/stats/d1")

    assert response.status_code == 200
    body = response.json()
    assert body["cpu"] == 12.5
    assert body["memory"] == 40.0
    assert body["networkRx"] == 10
    assert body["networkTx"] == 5
    assert "sampledAt" in body


class TestStop:
    @pytest.mark.asyncio
    async def test_stop(self, client, orchestrator):
        orchestrator.cancel = AsyncMock(return_value=True)

        response = await client.post("/stop/d1")

        assert response.status_code == 200
        assert response.json() == {"success": True}
        orchestrator.cancel.assert_awaited_once_with("d1")

    @pytest.mark.asyncio
    async def test_nothing_to_stop(self, client, orchestrator):
        orchestrator.cancel = AsyncMock(return_value=False)

        response = await client.post("/stop/ghost")

        assert response.status_code == 404
        assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_list_deployments(client, orchestrator):
    orchestrator.list_deployments = AsyncMock(
        return_value=[ContainerHandle(id="c-1", name="deploy-runner-d1", deployment_id="d1", status="running")]
    )

    response = await client.get("/deployments")

    assert response.status_code == 200
    [deployment] = response.json()["deployments"]
    assert deployment["id"] == "c-1"
    assert deployment["deploymentId"] == "d1"
    assert deployment["status"] == "running"


@pytest.mark.asyncio
async def test_correlation_id_header_accepted(client, orchestrator):
    response = await client.get("/health", headers={"X-Correlation-ID": "req_test"})
    assert response.status_code == 200
