"""Runner exception taxonomy.

Probe and stop failures are not exceptions: they surface as ``False``
results and warning logs so they can never abort a deployment.
"""


class RunnerError(Exception):
    """Base class for deployment pipeline failures."""


class SourceFetchError(RunnerError):
    """Raised when the repository cannot be checked out."""


class ContextAssemblyError(RunnerError):
    """Raised when a file of the working tree cannot be read into the build context."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to read {path}: {reason}")


class BuildError(RunnerError):
    """Raised when the engine reports a failed image build.

    Carries every log line captured up to the failure so operators can
    diagnose without re-running the build.
    """

    def __init__(self, message: str, logs: str = ""):
        self.logs = logs
        super().__init__(message)


class RunError(RunnerError):
    """Raised when a container cannot be created or started."""


class ContainerNotFoundError(RunnerError):
    """Raised when no container matches a deployment id or container id."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Container not found: {ref}")
