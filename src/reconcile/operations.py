"""Operation types produced by the diff and consumed by scheduler and executor."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import UNKNOWN, InstanceAddress

UNKNOWN_TEXT = '(known after apply)'


class Action(str, Enum):
    """What the engine will do to an instance."""
    CREATE = 'create'
    UPDATE = 'update'
    REPLACE = 'replace'
    DESTROY = 'destroy'
    NOOP = 'no-op'


def _display(value: Any) -> Any:
    if value is UNKNOWN:
        return UNKNOWN_TEXT
    if isinstance(value, dict):
        return {k: _display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_display(v) for v in value]
    return value


@dataclass(frozen=True)
class AttributeChange:
    """One changed attribute path."""
    path: str
    old: Any = None
    new: Any = None
    forces_replacement: bool = False

    def to_dict(self) -> dict:
        d = {'path': self.path, 'old': _display(self.old), 'new': _display(self.new)}
        if self.forces_replacement:
            d['forces_replacement'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'AttributeChange':
        return cls(
            path=data['path'],
            old=data.get('old'),
            new=data.get('new'),
            forces_replacement=data.get('forces_replacement', False),
        )


@dataclass
class Operation:
    """A planned action on one instance and the diff that produced it.

    Attributes:
        address: Target instance
        action: Create, Update, Replace, Destroy or NoOp
        desired: Declared attributes (unresolved ${...} expressions kept)
        changes: Attribute diff
        policy: Lifecycle policy in force
        create_before_destroy: Effective ordering for Replace (may be
            inherited from a dependent replaced with create_before_destroy)
        references: Expression text -> resolved target addresses
        dependencies: Instance addresses this instance depends on
        prior_id: Backend id recorded in state before the operation
        reason: Why the operation exists (e.g. 'not in description')
    """
    address: InstanceAddress
    action: Action
    desired: Optional[dict] = None
    changes: list[AttributeChange] = field(default_factory=list)
    policy: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    create_before_destroy: bool = False
    references: dict[str, list[str]] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    prior_id: Optional[str] = None
    reason: str = ''

    @property
    def kind(self) -> str:
        return self.address.kind

    @property
    def is_noop(self) -> bool:
        return self.action == Action.NOOP

    def describe(self) -> str:
        text = f"{self.action.value} {self.address}"
        if self.action == Action.REPLACE:
            text += ' (create before destroy)' if self.create_before_destroy else ' (destroy then create)'
        if self.reason:
            text += f" [{self.reason}]"
        return text

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': str(self.address),
            'action': self.action.value,
        }
        if self.desired is not None:
            d['desired'] = self.desired
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        policy = self.policy.to_dict()
        if policy:
            d['lifecycle'] = policy
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.references:
            d['references'] = {k: list(v) for k, v in self.references.items()}
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.prior_id is not None:
            d['prior_id'] = self.prior_id
        if self.reason:
            d['reason'] = self.reason
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Operation':
        address = InstanceAddress.parse(data['address'])
        return cls(
            address=address,
            action=Action(data['action']),
            desired=data.get('desired'),
            changes=[AttributeChange.from_dict(c) for c in data.get('changes', [])],
            policy=LifecyclePolicy.from_dict(data.get('lifecycle'), str(address)),
            create_before_destroy=data.get('create_before_destroy', False),
            references={k: list(v) for k, v in data.get('references', {}).items()},
            dependencies=list(data.get('dependencies', [])),
            prior_id=data.get('prior_id'),
            reason=data.get('reason', ''),
        )
