"""Routers package."""

from . import deployments, health

__all__ = [
    "deployments",
    "health",
]
