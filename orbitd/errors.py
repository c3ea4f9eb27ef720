"""Exception hierarchy shared by the resolver, the engine client and the scheduler."""

from typing import Optional


class OrbitdError(Exception):
    """Base class for every error raised by orbitd."""


class ConfigError(OrbitdError):
    """Invalid configuration value, file or flag."""


class MalformedReferenceError(OrbitdError):
    """An image string that is not a valid image reference."""

    def __init__(self, image: str, reason: str):
        super().__init__(f"Malformed image reference '{image}': {reason}")
        self.image = image
        self.reason = reason


class RegistryError(OrbitdError):
    """Tag listing failed; callers fall back to digest-only behaviour."""


class RegistryTimeoutError(RegistryError):
    """Tag listing did not finish within its time budget."""


class RegistryUnavailableError(RegistryError):
    """Registry unreachable or answered with an error."""


class PullFailedError(OrbitdError):
    """Image pull failed. Nothing on the host changed."""

    def __init__(self, image: str, reason: str):
        super().__init__(f"Failed to pull {image}: {reason}")
        self.image = image
        self.reason = reason


class EngineOperationError(OrbitdError):
    """A Docker Engine API call failed."""

    def __init__(self, operation: str, target: str, reason: str,
                 status_code: Optional[int] = None):
        super().__init__(f"{operation} {target} failed: {reason}")
        self.operation = operation
        self.target = target
        self.reason = reason
        self.status_code = status_code


class NotFoundError(EngineOperationError):
    """The engine reported 404 for the container or image."""


class RollbackFailedError(OrbitdError):
    """A failed replacement could not be undone; the container is down."""

    def __init__(self, container: str, phase: str, cause: Exception):
        super().__init__(
            f"Container {container} is DOWN after failed rollback "
            f"(phase {phase}): {cause}. Manual intervention required."
        )
        self.container = container
        self.phase = phase
        self.cause = cause
