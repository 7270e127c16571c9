"""Per-instance diff between declared attributes and recorded state.

The diff is a pure function of (desired attributes, StateRecord, policy,
schema): no clocks, no backend calls, no store access.
"""

import copy
import logging
from typing import Any, Optional

from backends import BackendRegistry
from backends.base import ResourceSchema
from common import flatten_attributes, path_matches
from reconcile.errors import ProtectedResourceDestroy
from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import InstanceAddress, ResourceInstance
from reconcile.operations import Action, AttributeChange, Operation
from reconcile.references import contains_unknown
from reconcile.state import StateRecord

logger = logging.getLogger(__name__)


def compare_attributes(
    desired: dict,
    prior: dict,
    policy: LifecyclePolicy,
    schema: ResourceSchema,
) -> list[AttributeChange]:
    """Classify changed attribute paths.

    Paths suppressed by ignore_changes and backend-computed paths are
    excluded. Any value containing UNKNOWN counts as changed.
    """
    want = flatten_attributes(desired)
    have = flatten_attributes(prior)
    changes: list[AttributeChange] = []

    for path in sorted(set(want) | set(have)):
        if path_matches(path, schema.computed) or policy.ignores(path):
            continue
        new = want.get(path)
        old = have.get(path)
        if not contains_unknown(new) and new == old and (path in want) == (path in have):
            continue
        changes.append(AttributeChange(
            path=path,
            old=old,
            new=new,
            forces_replacement=path_matches(path, schema.force_new),
        ))
    return changes


def merge_ignored(desired: dict, prior: dict, policy: LifecyclePolicy) -> dict:
    """Keep recorded values for attribute paths under ignore_changes."""
    if not policy.ignore_changes:
        return desired
    if policy.ignores_all:
        return copy.deepcopy(prior)

    merged = copy.deepcopy(desired)
    flat_prior = flatten_attributes(prior)
    for path in list(flatten_attributes(desired)) + list(flat_prior):
        if not policy.ignores(path):
            continue
        if path in flat_prior:
            _set_path(merged, path, copy.deepcopy(flat_prior[path]))
        else:
            _del_path(merged, path)
    return merged


def _set_path(target: dict, path: str, value: Any) -> None:
    parts = path.split('.')
    for part in parts[:-1]:
        nxt = target.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            target[part] = nxt
        target = nxt
    target[parts[-1]] = value


def _del_path(target: dict, path: str) -> None:
    parts = path.split('.')
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


class DiffEngine:
    """Classifies each instance into a single Operation."""

    def __init__(self, registry: BackendRegistry):
        self.registry = registry

    def diff(
        self,
        instance: ResourceInstance,
        resolved: dict,
        record: Optional[StateRecord],
        references: Optional[dict[str, list[str]]] = None,
        dependencies: Optional[list[str]] = None,
    ) -> Operation:
        """Diff one declared instance against its record.

        Args:
            instance: Declared instance (unresolved attributes)
            resolved: Attributes with references evaluated (UNKNOWN where not yet known)
            record: Current StateRecord, or None if never applied
            references: Expression -> target addresses, carried to execution
            dependencies: Addresses this instance depends on

        Raises:
            ProtectedResourceDestroy: If a replacement would destroy a protected instance
        """
        schema = self.registry.schema(instance.kind)
        policy = instance.policy
        op = Operation(
            address=instance.address,
            action=Action.CREATE,
            desired=copy.deepcopy(instance.attributes),
            policy=policy,
            create_before_destroy=policy.create_before_destroy,
            references=dict(references or {}),
            dependencies=list(dependencies or []),
        )

        if record is None:
            op.changes = compare_attributes(
                resolved, {}, LifecyclePolicy(), ResourceSchema(instance.kind, computed=schema.computed))
            return op

        op.prior_id = record.resource_id
        op.changes = compare_attributes(resolved, record.attributes, policy, schema)
        if not op.changes:
            op.action = Action.NOOP
        elif any(c.forces_replacement for c in op.changes):
            if policy.prevent_destroy or record.lifecycle.prevent_destroy:
                forcing = ', '.join(c.path for c in op.changes if c.forces_replacement)
                raise ProtectedResourceDestroy(str(instance.address), f'replace it (forced by {forcing})')
            op.action = Action.REPLACE
        else:
            op.action = Action.UPDATE

        logger.debug(f"{instance.address}: {op.action.value} ({len(op.changes)} change(s))")
        return op

    def diff_orphan(self, record: StateRecord, reason: str) -> Operation:
        """Plan destruction of a tracked instance with no declaration.

        Raises:
            ProtectedResourceDestroy: If the recorded policy forbids destroy
        """
        if record.lifecycle.prevent_destroy:
            raise ProtectedResourceDestroy(str(record.address), f'destroy it ({reason})')
        return Operation(
            address=record.address,
            action=Action.DESTROY,
            changes=[AttributeChange(path=p, old=v, new=None)
                     for p, v in sorted(flatten_attributes(record.attributes).items())],
            policy=record.lifecycle,
            dependencies=list(record.dependencies),
            prior_id=record.resource_id,
            reason=reason,
        )


def orphan_reason(address: InstanceAddress, declared_counts: dict) -> str:
    """Explain why a recorded instance has no declaration.

    declared_counts maps each declared ResourceAddress to its count
    (None for an un-indexed declaration).
    """
    if address.deposed:
        return 'deposed object'
    if address.resource in declared_counts:
        count = declared_counts[address.resource]
        if address.index is None:
            return 'declaration now has a count'
        if count is None:
            return 'declaration no longer has a count'
        return 'index no longer declared'
    return 'not in description'
