"""Plan computation: description + state -> ordered batches of operations.

Every build-time error (description, graph, reference, protection,
unbound kind) is raised here, before any backend call is made.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from backends import BackendRegistry
from common import content_hash
from description import Description
from reconcile.diff import DiffEngine, orphan_reason
from reconcile.errors import UnresolvedReference
from reconcile.graph import Catalog, DependencyGraph, GraphBuilder
from reconcile.model import UNKNOWN, InstanceAddress, Reference, ResourceInstance
from reconcile.operations import Action, Operation
from reconcile.references import evaluate, read_path
from reconcile.scheduler import PlannedStep, Scheduler
from reconcile.state import StateRecord, StateStore

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


@dataclass
class Plan:
    """An ordered, batched set of operations computed against one state snapshot.

    Attributes:
        description: Name of the description the plan was computed for
        operations: Operation per instance address (NoOps included)
        batches: Parallel batches of steps; batch i+1 starts after batch i
        state_fingerprint: StateStore fingerprint the plan was computed against
        signature: Hash of batch structure plus fingerprint
        created_at: Computation timestamp
        destroy_all: True for a full teardown plan
    """
    description: str
    operations: dict[InstanceAddress, Operation] = field(default_factory=dict)
    batches: list[list[PlannedStep]] = field(default_factory=list)
    state_fingerprint: str = ''
    signature: str = ''
    created_at: float = field(default_factory=time.time)
    destroy_all: bool = False

    def compute_signature(self) -> str:
        return content_hash({
            'batches': [[s.to_dict() for s in batch] for batch in self.batches],
            'operations': [self.operations[a].to_dict()
                           for a in sorted(self.operations, key=lambda a: a.sort_key)],
            'state_fingerprint': self.state_fingerprint,
        })

    @property
    def is_empty(self) -> bool:
        """True if applying the plan would make no backend call."""
        return not self.batches

    @property
    def steps(self) -> list[PlannedStep]:
        return [step for batch in self.batches for step in batch]

    def changes(self) -> list[Operation]:
        """Operations other than NoOp, in address order."""
        return [self.operations[a] for a in sorted(self.operations, key=lambda a: a.sort_key)
                if not self.operations[a].is_noop]

    def batch_index(self) -> dict[str, int]:
        """Step key -> batch number."""
        return {step.key: i for i, batch in enumerate(self.batches) for step in batch}

    def summary(self) -> dict[str, int]:
        """Count of operations per action."""
        counts = {action.value: 0 for action in Action}
        for op in self.operations.values():
            counts[op.action.value] += 1
        return counts

    def render(self) -> list[str]:
        """Human-readable lines: one header per batch, one line per step."""
        lines = []
        for i, batch in enumerate(self.batches):
            lines.append(f"Batch {i}:")
            for step in batch:
                op = self.operations[step.owner]
                label = f"{step.phase} {step.address}"
                if op.action == Action.REPLACE:
                    label += ' (replace)'
                if op.reason and step.phase == 'destroy':
                    label += f" [{op.reason}]"
                lines.append(f"  {label}")
                if step.phase != 'destroy':
                    for change in op.changes:
                        d = change.to_dict()
                        marker = ' # forces replacement' if change.forces_replacement else ''
                        lines.append(f"      {change.path}: {json.dumps(d['old'])} -> "
                                     f"{json.dumps(d['new'])}{marker}")
        counts = self.summary()
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['destroy']} to destroy, "
            f"{counts['no-op']} unchanged."
        )
        return lines

    def to_dict(self) -> dict:
        return {
            'version': PLAN_FORMAT_VERSION,
            'description': self.description,
            'created_at': self.created_at,
            'state_fingerprint': self.state_fingerprint,
            'signature': self.signature,
            'destroy_all': self.destroy_all,
            'summary': self.summary(),
            'operations': [self.operations[a].to_dict()
                           for a in sorted(self.operations, key=lambda a: a.sort_key)],
            'batches': [[s.to_dict() for s in batch] for batch in self.batches],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        """Rebuild a plan from its artifact.

        Raises:
            ValueError: If the format version or signature does not match
        """
        version = data.get('version')
        if version != PLAN_FORMAT_VERSION:
            raise ValueError(f"Unsupported plan format version: {version}")
        operations = {}
        for op_data in data.get('operations', []):
            op = Operation.from_dict(op_data)
            operations[op.address] = op
        plan = cls(
            description=data['description'],
            operations=operations,
            batches=[[PlannedStep.from_dict(s) for s in batch] for batch in data.get('batches', [])],
            state_fingerprint=data.get('state_fingerprint', ''),
            signature=data.get('signature', ''),
            created_at=data.get('created_at', 0.0),
            destroy_all=data.get('destroy_all', False),
        )
        if plan.signature != plan.compute_signature():
            raise ValueError("Plan signature does not match its contents")
        return plan

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        with open(path, encoding='utf-8') as f:
            return cls.from_dict(json.load(f))


def _plan_resolver(
    inst: ResourceInstance,
    targets: dict[str, list[InstanceAddress]],
    records: dict[InstanceAddress, StateRecord],
    planned: dict[InstanceAddress, tuple[Operation, dict]],
) -> Callable[[str], Any]:
    """Resolve expressions of one instance against plan-time knowledge.

    Targets being created or replaced yield UNKNOWN. Targets being
    updated yield their new resolved attribute values; their computed
    outputs are UNKNOWN until the update runs.
    """
    refs: dict[str, Reference] = {r.expression: r for r in inst.references}

    def _read(ref: Reference, target: InstanceAddress) -> Any:
        op, resolved = planned[target]
        if op.action in (Action.CREATE, Action.REPLACE):
            return UNKNOWN
        record = records[target]
        head = ref.output_path[0]
        if op.action == Action.UPDATE and head != 'id':
            if head not in resolved:
                return UNKNOWN
            return read_path(record.resource_id, resolved, {}, ref.output_path)
        return read_path(record.resource_id, record.attributes, record.outputs, ref.output_path)

    def resolve(expression: str) -> Any:
        ref = refs[expression]
        values = []
        for target in targets[expression]:
            try:
                values.append(_read(ref, target))
            except KeyError:
                raise UnresolvedReference(
                    str(inst.address), ref.attribute_path, '${' + expression + '}',
                    f"{target} has no attribute '{'.'.join(ref.output_path)}'",
                )
        return values if ref.is_splat else values[0]

    return resolve


def _propagate_create_before_destroy(
    operations: dict[InstanceAddress, Operation],
    graph: DependencyGraph,
) -> None:
    """Replaced dependencies of a create_before_destroy replacement must also create first.

    Otherwise the old dependent (kept until its new object exists) would
    have to outlive a dependency that is destroyed before it is recreated.
    """
    queue = [a for a, op in operations.items()
             if op.action == Action.REPLACE and op.create_before_destroy]
    while queue:
        addr = queue.pop()
        for dep in graph.dependencies(addr):
            dep_op = operations.get(dep)
            if dep_op and dep_op.action == Action.REPLACE and not dep_op.create_before_destroy:
                dep_op.create_before_destroy = True
                logger.info(f"{dep}: replaced with create_before_destroy (required by {addr})")
                queue.append(dep)


def build_plan(
    description: Description,
    store: StateStore,
    registry: BackendRegistry,
    destroy_all: bool = False,
) -> Plan:
    """Compute the plan that converges state to the description.

    Args:
        description: Declared resources
        store: Current state
        registry: Backend bindings (force_new tables per kind)
        destroy_all: Plan destruction of every tracked instance instead

    Raises:
        DescriptionError: Malformed description or unbound kind
        UnresolvedReference: Reference to an undeclared instance or attribute
        InvalidGraph: Dependency cycle
        ProtectedResourceDestroy: Plan would destroy a prevent_destroy instance
    """
    instances = description.expand()
    catalog = Catalog.from_instances(instances)
    for decl in description.resources:
        catalog.declare(decl.address, decl.count)
    graph = GraphBuilder(instances, catalog).build(strict=True)

    fingerprint = store.fingerprint()
    records = {r.address: r for r in store.list_all()}
    engine = DiffEngine(registry)
    operations: dict[InstanceAddress, Operation] = {}

    for kind in sorted({i.kind for i in instances} | {r.kind for r in records.values()}):
        registry.get(kind)

    if destroy_all:
        for addr, record in records.items():
            operations[addr] = engine.diff_orphan(record, 'destroy requested')
    else:
        by_address = {i.address: i for i in instances}
        planned: dict[InstanceAddress, tuple[Operation, dict]] = {}

        for addr in graph.create_order():
            inst = by_address[addr]
            targets = graph.resolved.get(addr, {})
            resolved = evaluate(inst.attributes, _plan_resolver(inst, targets, records, planned))
            op = engine.diff(
                inst,
                resolved,
                records.get(addr),
                references={expr: [str(t) for t in ts] for expr, ts in targets.items()},
                dependencies=sorted(str(d) for d in graph.dependencies(addr)),
            )
            operations[addr] = op
            planned[addr] = (op, resolved)

        declared = {d.address: d.count for d in description.resources}
        for addr, record in records.items():
            if addr not in by_address:
                operations[addr] = engine.diff_orphan(record, orphan_reason(addr, declared))

        _propagate_create_before_destroy(operations, graph)

    batches = Scheduler(None if destroy_all else graph, operations, records).schedule()
    plan = Plan(
        description=description.name,
        operations=operations,
        batches=batches,
        state_fingerprint=fingerprint,
        destroy_all=destroy_all,
    )
    plan.signature = plan.compute_signature()

    counts = plan.summary()
    logger.info(
        f"Plan for '{description.name}': {counts['create']} create, {counts['update']} update, "
        f"{counts['replace']} replace, {counts['destroy']} destroy, {counts['no-op']} unchanged "
        f"in {len(batches)} batch(es)"
    )
    return plan
