"""Target port resolution.

The port a workload listens on is resolved by an ordered chain of
strategies. Each returns a port or ``None``; the first hit wins and the
chain ends at a fixed default.
"""

import re
from collections.abc import Callable, Sequence

from deploy_runner.models import DeploymentRequest

PortStrategy = Callable[[DeploymentRequest], int | None]

EXPOSE_PATTERN = re.compile(r"^\s*EXPOSE\s+(\d+)", re.IGNORECASE | re.MULTILINE)


def _valid(port: int) -> int | None:
    return port if 0 < port < 65536 else None


def explicit_port(request: DeploymentRequest) -> int | None:
    return request.port


def env_port(request: DeploymentRequest) -> int | None:
    """PORT entry of the injected environment."""
    value = request.env_vars.get("PORT", "").strip()
    if value.isdigit():
        return _valid(int(value))
    return None


def exposed_port(request: DeploymentRequest) -> int | None:
    """Last EXPOSE instruction of the build file."""
    matches = EXPOSE_PATTERN.findall(request.build_file)
    if not matches:
        return None
    return _valid(int(matches[-1]))


DEFAULT_STRATEGIES: tuple[PortStrategy, ...] = (explicit_port, env_port, exposed_port)


def resolve_port(
    request: DeploymentRequest,
    default: int = 3000,
    strategies: Sequence[PortStrategy] = DEFAULT_STRATEGIES,
) -> int:
    for strategy in strategies:
        port = strategy(request)
        if port is not None:
            return port
    return default
