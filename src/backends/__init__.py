"""Backend bindings: which CloudBackend serves which resource kind."""

import logging
from typing import Optional

from backends.base import BackendBinding, CloudBackend, ResourceSchema
from backends.http import HttpBackend
from backends.memory import InMemoryBackend
from reconcile.errors import DescriptionError

logger = logging.getLogger(__name__)

__all__ = [
    'BackendBinding',
    'BackendRegistry',
    'CloudBackend',
    'HttpBackend',
    'InMemoryBackend',
    'ResourceSchema',
]


class BackendRegistry:
    """Maps resource kinds to backend bindings.

    A default binding (if set) serves kinds without an explicit binding,
    with an empty force_new table.
    """

    def __init__(self, default: Optional[CloudBackend] = None):
        self._bindings: dict[str, BackendBinding] = {}
        self._default = default

    def bind(self, kind: str, backend: CloudBackend, schema: Optional[ResourceSchema] = None) -> None:
        if not isinstance(backend, CloudBackend):
            raise TypeError(f"Backend for '{kind}' does not implement CloudBackend")
        self._bindings[kind] = BackendBinding(backend=backend, schema=schema or ResourceSchema(kind))
        logger.debug(f"Bound kind '{kind}' to {type(backend).__name__}")

    def get(self, kind: str) -> BackendBinding:
        """Get the binding for a kind.

        Raises:
            DescriptionError: If no backend serves the kind
        """
        binding = self._bindings.get(kind)
        if binding is not None:
            return binding
        if self._default is not None:
            return BackendBinding(backend=self._default, schema=ResourceSchema(kind))
        raise DescriptionError(
            f"No backend bound for resource kind '{kind}'. "
            f"Bound kinds: {', '.join(sorted(self._bindings)) or 'none'}"
        )

    def schema(self, kind: str) -> ResourceSchema:
        return self.get(kind).schema

    def __contains__(self, kind: str) -> bool:
        return kind in self._bindings or self._default is not None

    def backends(self) -> list[CloudBackend]:
        """Distinct backend objects (for cancellation)."""
        seen: list[CloudBackend] = []
        candidates = [b.backend for b in self._bindings.values()]
        if self._default is not None:
            candidates.append(self._default)
        for backend in candidates:
            if not any(backend is s for s in seen):
                seen.append(backend)
        return seen
