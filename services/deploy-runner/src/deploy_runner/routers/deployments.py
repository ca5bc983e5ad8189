"""Deployment router: deploy, logs, stats, stop, listing."""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
import structlog

from deploy_runner.dependencies import get_orchestrator
from deploy_runner.errors import RunnerError
from deploy_runner.models import DeploymentRequest
from deploy_runner.orchestrator import DeploymentOrchestrator

logger = structlog.get_logger()

router = APIRouter(tags=["deployments"])


@router.post("/deploy")
async def deploy(
    deployment: DeploymentRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Build and run a deployment. Blocks until the pipeline reaches a terminal state."""
    result = await orchestrator.run_with_timeout(deployment)
    body = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    if not result.success:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
    return body


@router.get("/logs/{deployment_id}")
async def get_logs(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Container logs, or the stored build logs when no container is running."""
    logs = await orchestrator.logs(deployment_id)
    return {"logs": logs or "No logs available"}


@router.get("/logs/{deployment_id}/stream")
async def stream_logs(
    deployment_id: str,
    request: Request,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Stream container logs via Server-Sent Events until the container or client goes away."""
    chunks = await orchestrator.follow(deployment_id, is_disconnected=request.is_disconnected)

    async def log_stream():
        try:
            async for chunk in chunks:
                yield f"data: {chunk}\n\n"
        except RunnerError as e:
            logger.warning("log_stream_failed", deployment_id=deployment_id, error=str(e))
            yield f"data: Error streaming logs: {e}\n\n"
        finally:
            await chunks.aclose()

    return StreamingResponse(
        log_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/stats/{deployment_id}")
async def get_stats(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Current resource usage; CPU and memory are also recorded as metric history."""
    sample = await orchestrator.stats(deployment_id)
    return sample.model_dump(mode="json", by_alias=True)


@router.post("/stop/{deployment_id}")
async def stop(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Best-effort stop. Marks the deployment CANCELED."""
    canceled = await orchestrator.cancel(deployment_id)
    if not canceled:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "error": f"Nothing to stop for deployment {deployment_id}"},
        )
    return {"success": True}


@router.get("/deployments")
async def list_deployments(
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """All containers carrying the runner's labels."""
    handles = await orchestrator.list_deployments()
    return {"deployments": [h.model_dump(mode="json", by_alias=True) for h in handles]}
