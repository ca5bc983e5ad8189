"""FastAPI dependencies."""

from fastapi import Request

from deploy_runner.orchestrator import DeploymentOrchestrator


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    """Orchestrator wired during application lifespan."""
    return request.app.state.orchestrator
