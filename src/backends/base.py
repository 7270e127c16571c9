"""CloudBackend capability and per-kind resource schemas.

The engine never knows what a backend provisions. Each resource kind is
bound to a backend plus a ResourceSchema naming the attributes whose
change forces replacement.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class CloudBackend(Protocol):
    """Protocol for control-plane clients that implement the CRUD calls."""

    def create(self, kind: str, attrs: dict) -> tuple[str, dict]:
        """Create an object. Returns (id, output attributes)."""

    def read(self, kind: str, resource_id: str) -> dict:
        """Return current attributes. Raises ResourceNotFound."""

    def update(self, kind: str, resource_id: str, changes: dict, attrs: dict) -> dict:
        """Apply changed attributes in place. Returns output attributes."""

    def destroy(self, kind: str, resource_id: str) -> None:
        """Delete an object."""


@dataclass(frozen=True)
class ResourceSchema:
    """Static attribute table for one resource kind.

    Attributes:
        kind: Resource kind
        force_new: Attribute paths whose change requires destroy-and-recreate
        computed: Backend-owned outputs never compared against the description
    """
    kind: str
    force_new: frozenset = field(default_factory=frozenset)
    computed: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, kind: str, data: Optional[dict]) -> 'ResourceSchema':
        data = data or {}
        return cls(
            kind=kind,
            force_new=frozenset(data.get('force_new', [])),
            computed=frozenset(data.get('computed', [])),
        )


@dataclass
class BackendBinding:
    """A backend and schema bound to one resource kind."""
    backend: CloudBackend
    schema: ResourceSchema
