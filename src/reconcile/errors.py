"""Error taxonomy for the reconciliation engine.

Build-time errors (description, graph, reference, protection) are raised
before any backend call is made. Execution-time errors are scoped to a
single operation and surface through ApplyResult rather than propagating.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors.

    Attributes:
        address: Resource address the error relates to (if any)
        cause: Underlying cause message
    """

    def __init__(self, message: str, address: Optional[str] = None, cause: Optional[str] = None):
        super().__init__(message)
        self.address = address
        self.cause = cause or message


class DescriptionError(EngineError):
    """Malformed description (missing fields, duplicates, bad expressions)."""


class InvalidPolicy(DescriptionError):
    """Lifecycle policy is inconsistent with its declaration."""


class InvalidGraph(EngineError):
    """Dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            address=self.cycle[0] if self.cycle else None,
        )


class UnresolvedReference(EngineError):
    """Attribute expression references an undeclared instance."""

    def __init__(self, address: str, attribute_path: str, target: str, reason: str = ''):
        self.attribute_path = attribute_path
        self.target = target
        detail = f" ({reason})" if reason else ''
        super().__init__(
            f"Unknown reference '{target}' in {address}.{attribute_path}{detail}",
            address=address,
        )


class ProtectedResourceDestroy(EngineError):
    """Plan would destroy an instance with prevent_destroy set."""

    def __init__(self, address: str, reason: str = 'destroy'):
        super().__init__(
            f"Instance '{address}' has prevent_destroy set; plan would {reason} it",
            address=address,
        )


class BackendError(EngineError):
    """Base class for errors raised by a CloudBackend."""


class TransientBackendError(BackendError):
    """Network, timeout or rate-limit failure. Retried with backoff."""


class PermanentBackendError(BackendError):
    """Validation, permission or conflict failure. Never retried."""


class ResourceNotFound(BackendError):
    """Backend has no object with the requested id."""


class OperationFailed(EngineError):
    """An operation exhausted its retries or hit a permanent failure."""

    def __init__(self, address: str, cause: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(
            f"Operation on '{address}' failed after {attempts} attempt(s): {cause}",
            address=address,
            cause=cause,
        )


class StalePlan(EngineError):
    """State changed between plan computation and execution."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Plan is stale: state fingerprint {actual[:12]} does not match "
            f"planned {expected[:12]}; recompute the plan"
        )
