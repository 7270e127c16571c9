"""Batch scheduling of planned operations.

Turns the per-instance operations into an ordered list of parallel
batches. Two orderings are merged:

- create/update steps follow dependency order (dependencies first)
- destroy steps follow reverse dependency order (dependents first),
  using the dependencies recorded in state when the object was applied

Replace expands into a create step and a destroy step. With
create_before_destroy the create step precedes the destroy step (which
then targets the deposed object, under a generation not held by an
earlier deposed object still awaiting destroy); otherwise destroy
precedes create.

Batch i+1 must not start until every step in batch i is terminal.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from reconcile.errors import InvalidGraph
from reconcile.graph import DependencyGraph
from reconcile.model import InstanceAddress
from reconcile.operations import Action, Operation
from reconcile.state import StateRecord

logger = logging.getLogger(__name__)

PHASE_CREATE = 'create'
PHASE_UPDATE = 'update'
PHASE_DESTROY = 'destroy'


@dataclass
class PlannedStep:
    """One backend-bound step in a batch.

    Attributes:
        key: Unique step key ('create:subnet.app[0]')
        address: Instance whose record the step writes (the deposed
            address for the destroy half of a create_before_destroy replace)
        action: Action of the owning Operation
        phase: create, update or destroy
        requires: Keys of steps that must succeed first
    """
    key: str
    address: InstanceAddress
    action: Action
    phase: str
    requires: list[str] = field(default_factory=list)

    @property
    def owner(self) -> InstanceAddress:
        """Address of the Operation this step belongs to."""
        return self.address.as_current() if self.action == Action.REPLACE else self.address

    def to_dict(self) -> dict:
        d = {
            'key': self.key,
            'address': str(self.address),
            'action': self.action.value,
            'phase': self.phase,
        }
        if self.requires:
            d['requires'] = list(self.requires)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'PlannedStep':
        return cls(
            key=data['key'],
            address=InstanceAddress.parse(data['address']),
            action=Action(data['action']),
            phase=data['phase'],
            requires=list(data.get('requires', [])),
        )


class Scheduler:
    """Orders operations into parallel batches (Kahn's algorithm by level)."""

    def __init__(
        self,
        graph: Optional[DependencyGraph],
        operations: dict[InstanceAddress, Operation],
        records: dict[InstanceAddress, StateRecord],
    ):
        self.graph = graph
        self.operations = operations
        self.records = records
        self._steps: dict[str, PlannedStep] = {}
        self._succ: dict[str, set[str]] = {}
        self._pred: dict[str, set[str]] = {}
        self._noops: set[str] = set()

    def _add_node(self, step: PlannedStep) -> str:
        self._steps[step.key] = step
        self._succ.setdefault(step.key, set())
        self._pred.setdefault(step.key, set())
        return step.key

    def _add_edge(self, before: str, after: str) -> None:
        if before == after:
            return
        self._succ[before].add(after)
        self._pred[after].add(before)

    def _free_deposed(self, addr: InstanceAddress) -> InstanceAddress:
        """First deposed address of addr not held by a leftover record."""
        generation = 0
        while addr.as_deposed(generation) in self.records:
            generation += 1
        return addr.as_deposed(generation)

    def _build_nodes(self) -> tuple[dict[InstanceAddress, str], dict[InstanceAddress, str]]:
        apply_nodes: dict[InstanceAddress, str] = {}
        destroy_nodes: dict[InstanceAddress, str] = {}

        for addr, op in sorted(self.operations.items(), key=lambda i: i[0].sort_key):
            if op.action == Action.NOOP:
                key = self._add_node(PlannedStep(f'noop:{addr}', addr, op.action, PHASE_UPDATE))
                self._noops.add(key)
                apply_nodes[addr] = key
            elif op.action == Action.CREATE:
                apply_nodes[addr] = self._add_node(
                    PlannedStep(f'create:{addr}', addr, op.action, PHASE_CREATE))
            elif op.action == Action.UPDATE:
                apply_nodes[addr] = self._add_node(
                    PlannedStep(f'update:{addr}', addr, op.action, PHASE_UPDATE))
            elif op.action == Action.DESTROY:
                destroy_nodes[addr] = self._add_node(
                    PlannedStep(f'destroy:{addr}', addr, op.action, PHASE_DESTROY))
            elif op.action == Action.REPLACE:
                create_key = self._add_node(
                    PlannedStep(f'create:{addr}', addr, op.action, PHASE_CREATE))
                target = self._free_deposed(addr) if op.create_before_destroy else addr
                destroy_key = self._add_node(
                    PlannedStep(f'destroy:{target}', target, op.action, PHASE_DESTROY))
                apply_nodes[addr] = create_key
                destroy_nodes[addr] = destroy_key
                if op.create_before_destroy:
                    self._add_edge(create_key, destroy_key)
                else:
                    self._add_edge(destroy_key, create_key)

        return apply_nodes, destroy_nodes

    def _build_edges(self, apply_nodes: dict, destroy_nodes: dict) -> None:
        # Create/update order: dependency before dependent
        if self.graph is not None:
            for dependency, dependent in self.graph.edges:
                if dependency in apply_nodes and dependent in apply_nodes:
                    self._add_edge(apply_nodes[dependency], apply_nodes[dependent])

        # Destroy order: dependents (as recorded) leave before their dependency goes
        for target, destroy_key in destroy_nodes.items():
            target_op = self.operations[target]
            in_place_follows = (target_op.action == Action.REPLACE
                                and not target_op.create_before_destroy)
            for record in self.records.values():
                if record.address == target or str(target) not in record.dependencies:
                    continue
                dependent = record.address
                if dependent in destroy_nodes:
                    self._add_edge(destroy_nodes[dependent], destroy_key)
                elif dependent in apply_nodes and not in_place_follows:
                    if apply_nodes[dependent] not in self._noops:
                        self._add_edge(apply_nodes[dependent], destroy_key)

    def _contract_noops(self) -> None:
        """Remove no-op nodes, keeping the ordering they imposed."""
        for key in sorted(self._noops):
            preds = self._pred.pop(key)
            succs = self._succ.pop(key)
            for p in preds:
                self._succ[p].discard(key)
            for s in succs:
                self._pred[s].discard(key)
            for p in preds:
                for s in succs:
                    self._add_edge(p, s)
            del self._steps[key]

    def schedule(self) -> list[list[PlannedStep]]:
        """Compute parallel batches.

        Raises:
            InvalidGraph: If the merged create/destroy ordering has a cycle
        """
        apply_nodes, destroy_nodes = self._build_nodes()
        self._build_edges(apply_nodes, destroy_nodes)
        self._contract_noops()

        remaining = {k: len(self._pred[k]) for k in self._steps}
        current = sorted(k for k, d in remaining.items() if d == 0)
        batches: list[list[PlannedStep]] = []
        placed = 0

        while current:
            batch = []
            for key in current:
                step = self._steps[key]
                step.requires = sorted(self._pred[key])
                batch.append(step)
            batches.append(batch)
            placed += len(current)

            following: list[str] = []
            for key in current:
                for succ in self._succ[key]:
                    remaining[succ] -= 1
                    if remaining[succ] == 0:
                        following.append(succ)
            current = sorted(following)

        if placed != len(self._steps):
            stuck = sorted(k for k, d in remaining.items() if d > 0)
            raise InvalidGraph(stuck)

        logger.debug(f"Scheduled {placed} step(s) in {len(batches)} batch(es)")
        return batches
