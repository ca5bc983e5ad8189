"""Deploy Runner - builds repositories into images and runs them as labeled containers."""

from deploy_runner.models import DeploymentRequest, DeploymentResult, DeploymentStatus

__all__ = ["DeploymentRequest", "DeploymentResult", "DeploymentStatus"]
