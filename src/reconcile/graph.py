"""Dependency graph construction for declared resources.

Builds a directed graph over resource instances from attribute references
and explicit depends_on hints. An edge A -> B means B depends on A
(A must exist before B is created; B must be gone before A is destroyed).
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from reconcile.errors import InvalidGraph, UnresolvedReference
from reconcile.model import InstanceAddress, Reference, ResourceAddress, ResourceInstance

logger = logging.getLogger(__name__)


@dataclass
class Catalog:
    """Declared instances per resource, used to resolve reference targets.

    Attributes:
        instances: Instance addresses per declared resource
        counted: Resources declared with a count (indexed instances)
    """
    instances: dict[ResourceAddress, list[InstanceAddress]] = field(default_factory=dict)
    counted: set[ResourceAddress] = field(default_factory=set)

    @classmethod
    def from_instances(cls, instances: list[ResourceInstance]) -> 'Catalog':
        catalog = cls()
        for inst in instances:
            catalog.instances.setdefault(inst.address.resource, []).append(inst.address)
            if inst.address.index is not None:
                catalog.counted.add(inst.address.resource)
        return catalog

    def declare(self, resource: ResourceAddress, count: Optional[int]) -> None:
        """Register a declaration (needed for count = 0, which has no instances)."""
        self.instances.setdefault(resource, [])
        if count is not None:
            self.counted.add(resource)


def resolve_reference(ref: Reference, catalog: Catalog) -> list[InstanceAddress]:
    """Resolve a reference to the declared instance(s) it reads.

    Raises:
        UnresolvedReference: If the target is undeclared or the selector does not fit it
    """
    source = str(ref.source)
    target_text = '${' + ref.expression + '}'
    if ref.target not in catalog.instances:
        raise UnresolvedReference(source, ref.attribute_path, target_text, 'not declared')

    declared = catalog.instances[ref.target]
    counted = ref.target in catalog.counted

    if ref.selector == '*':
        if not counted:
            raise UnresolvedReference(source, ref.attribute_path, target_text,
                                      f'{ref.target} has no count; drop [*]')
        return list(declared)

    if ref.selector is None:
        if counted:
            raise UnresolvedReference(source, ref.attribute_path, target_text,
                                      f'{ref.target} has a count; use [index] or [*]')
        return list(declared)

    if not counted:
        raise UnresolvedReference(source, ref.attribute_path, target_text,
                                  f'{ref.target} has no count; drop the index')
    for addr in declared:
        if addr.index == ref.selector:
            return [addr]
    raise UnresolvedReference(source, ref.attribute_path, target_text,
                              f'index {ref.selector} out of range')


def resolve_depends_on(source: InstanceAddress, hint: str, catalog: Catalog) -> list[InstanceAddress]:
    """Resolve a depends_on hint ('kind.name' covers every instance).

    Raises:
        UnresolvedReference: If the hint names an undeclared resource or instance
    """
    target = InstanceAddress.parse(hint)
    declared = catalog.instances.get(target.resource)
    if declared is None:
        raise UnresolvedReference(str(source), 'depends_on', hint, 'not declared')
    if target.index is None:
        return list(declared)
    for addr in declared:
        if addr.index == target.index:
            return [addr]
    raise UnresolvedReference(str(source), 'depends_on', hint, 'instance not declared')


class DependencyGraph:
    """Directed dependency graph over instance addresses.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self):
        self._nodes: set[InstanceAddress] = set()
        self._deps: dict[InstanceAddress, set[InstanceAddress]] = {}
        self._dependents: dict[InstanceAddress, set[InstanceAddress]] = {}
        self.edge_reasons: dict[tuple[InstanceAddress, InstanceAddress], list[str]] = {}
        self.resolved: dict[InstanceAddress, dict[str, list[InstanceAddress]]] = {}
        self.unresolved: dict[InstanceAddress, list[UnresolvedReference]] = {}

    def add_node(self, addr: InstanceAddress) -> None:
        self._nodes.add(addr)
        self._deps.setdefault(addr, set())
        self._dependents.setdefault(addr, set())

    def add_edge(self, dependency: InstanceAddress, dependent: InstanceAddress, reason: str = '') -> None:
        """Record that dependent needs dependency."""
        self.add_node(dependency)
        self.add_node(dependent)
        self._deps[dependent].add(dependency)
        self._dependents[dependency].add(dependent)
        self.edge_reasons.setdefault((dependency, dependent), [])
        if reason:
            self.edge_reasons[(dependency, dependent)].append(reason)

    @property
    def nodes(self) -> list[InstanceAddress]:
        return sorted(self._nodes, key=lambda a: a.sort_key)

    @property
    def edges(self) -> list[tuple[InstanceAddress, InstanceAddress]]:
        return sorted(self.edge_reasons, key=lambda e: (e[0].sort_key, e[1].sort_key))

    def __contains__(self, addr: InstanceAddress) -> bool:
        return addr in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def dependencies(self, addr: InstanceAddress) -> set[InstanceAddress]:
        return set(self._deps.get(addr, set()))

    def dependents(self, addr: InstanceAddress) -> set[InstanceAddress]:
        return set(self._dependents.get(addr, set()))

    def find_cycle(self) -> Optional[list[InstanceAddress]]:
        """Return the members of one cycle (first node repeated at the end), or None.

        Depth-first traversal with an explicit recursion stack.
        """
        visited: set[InstanceAddress] = set()
        in_stack: set[InstanceAddress] = set()
        stack: list[InstanceAddress] = []

        def _visit(node: InstanceAddress) -> Optional[list[InstanceAddress]]:
            visited.add(node)
            in_stack.add(node)
            stack.append(node)
            for dep in sorted(self._dependents[node], key=lambda a: a.sort_key):
                if dep in in_stack:
                    return stack[stack.index(dep):] + [dep]
                if dep not in visited:
                    found = _visit(dep)
                    if found:
                        return found
            stack.pop()
            in_stack.discard(node)
            return None

        for node in self.nodes:
            if node not in visited:
                cycle = _visit(node)
                if cycle:
                    return cycle
        return None

    def create_order(self) -> list[InstanceAddress]:
        """Return nodes with every dependency before its dependents (Kahn)."""
        remaining = {n: len(self._deps[n]) for n in self._nodes}
        queue: deque[InstanceAddress] = deque(
            sorted((n for n, d in remaining.items() if d == 0), key=lambda a: a.sort_key))
        ordered: list[InstanceAddress] = []

        while queue:
            node = queue.popleft()
            ordered.append(node)
            for dep in sorted(self._dependents[node], key=lambda a: a.sort_key):
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    queue.append(dep)

        if len(ordered) != len(self._nodes):
            raise InvalidGraph([str(a) for a in (self.find_cycle() or [])])
        return ordered

    def destroy_order(self) -> list[InstanceAddress]:
        """Return nodes in destruction order (dependents before dependencies)."""
        return list(reversed(self.create_order()))


class GraphBuilder:
    """Builds a DependencyGraph from expanded resource instances."""

    def __init__(self, instances: list[ResourceInstance], catalog: Optional[Catalog] = None):
        self.instances = instances
        self.catalog = catalog or Catalog.from_instances(instances)

    def build(self, strict: bool = True) -> DependencyGraph:
        """Build the graph.

        Args:
            strict: Raise on the first unresolved reference. When False,
                    unresolved references are collected in graph.unresolved.

        Raises:
            UnresolvedReference: If strict and a reference target is undeclared
            InvalidGraph: If references form a cycle
        """
        graph = DependencyGraph()
        for inst in self.instances:
            graph.add_node(inst.address)

        for inst in self.instances:
            resolved: dict[str, list[InstanceAddress]] = {}
            for ref in inst.references:
                try:
                    targets = resolve_reference(ref, self.catalog)
                except UnresolvedReference as e:
                    if strict:
                        raise
                    graph.unresolved.setdefault(inst.address, []).append(e)
                    continue
                resolved[ref.expression] = targets
                for target in targets:
                    graph.add_edge(target, inst.address, ref.attribute_path)

            for hint in inst.depends_on:
                try:
                    targets = resolve_depends_on(inst.address, hint, self.catalog)
                except UnresolvedReference as e:
                    if strict:
                        raise
                    graph.unresolved.setdefault(inst.address, []).append(e)
                    continue
                for target in targets:
                    graph.add_edge(target, inst.address, 'depends_on')

            graph.resolved[inst.address] = resolved

        cycle = graph.find_cycle()
        if cycle:
            raise InvalidGraph([str(a) for a in cycle])

        logger.debug(f"Built dependency graph: {len(graph)} node(s), {len(graph.edges)} edge(s)")
        return graph
