"""Per-resource lifecycle policy.

Pure data consumed by the diff and scheduler. The only behavior here is
parsing and validation of the lifecycle block.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from common import path_matches
from reconcile.errors import InvalidPolicy

IGNORE_ALL = '*'


@dataclass(frozen=True)
class LifecyclePolicy:
    """Lifecycle flags attached to a declaration.

    Attributes:
        create_before_destroy: Replace by creating the new object first
        prevent_destroy: Reject any plan that would destroy the instance
        ignore_changes: Attribute paths excluded from comparison
    """
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset = field(default_factory=frozenset)

    @property
    def ignores_all(self) -> bool:
        return IGNORE_ALL in self.ignore_changes

    def ignores(self, path: str) -> bool:
        """True if changes to path (or a parent block of it) are suppressed."""
        if self.ignores_all:
            return True
        return path_matches(path, self.ignore_changes)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        if self.ignore_changes:
            d['ignore_changes'] = sorted(self.ignore_changes)
        return d

    @classmethod
    def from_dict(cls, data: Optional[dict], address: str = '') -> 'LifecyclePolicy':
        """Parse a lifecycle block.

        Raises:
            InvalidPolicy: If flags are not booleans or ignore paths are malformed
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise InvalidPolicy(f"{address}: lifecycle must be a mapping", address=address)

        unknown = set(data) - {'create_before_destroy', 'prevent_destroy', 'ignore_changes'}
        if unknown:
            raise InvalidPolicy(
                f"{address}: unknown lifecycle setting(s): {', '.join(sorted(unknown))}",
                address=address,
            )

        for flag in ('create_before_destroy', 'prevent_destroy'):
            if flag in data and not isinstance(data[flag], bool):
                raise InvalidPolicy(f"{address}: lifecycle.{flag} must be true or false",
                                    address=address)

        ignore = data.get('ignore_changes') or []
        if ignore == 'all':
            ignore = [IGNORE_ALL]
        if not isinstance(ignore, list) or not all(isinstance(p, str) and p for p in ignore):
            raise InvalidPolicy(
                f"{address}: lifecycle.ignore_changes must be a list of attribute paths or 'all'",
                address=address,
            )

        return cls(
            create_before_destroy=data.get('create_before_destroy', False),
            prevent_destroy=data.get('prevent_destroy', False),
            ignore_changes=frozenset(ignore),
        )


def validate_policy(policy: LifecyclePolicy, count: Optional[int], address: str) -> None:
    """Reject policies that contradict their declaration.

    A prevent_destroy declaration with count 0 would force an implicit
    destroy of every existing instance.

    Raises:
        InvalidPolicy: On contradiction
    """
    if policy.prevent_destroy and count == 0:
        raise InvalidPolicy(
            f"{address}: prevent_destroy cannot be combined with count = 0",
            address=address,
        )
