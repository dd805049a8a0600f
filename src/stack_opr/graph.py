"""Resource graph for stack provisioning.

Builds a dependency graph from a Template: every resource becomes an
immutable ResourceNode, and edges come from explicit DependsOn entries
and from Ref/GetAtt/Sub references found in properties and metadata.
Provides deterministic orderings for apply (dependencies first) and
destroy (dependents first), plus parallel waves for preview.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from common import CycleError, UnresolvedReferenceError
from stack_opr.values import (
    PSEUDO_PARAMETERS,
    MapValue,
    Value,
    iter_references,
    parse_value,
)
from template import Template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    """A pointer from one resource's property to another resource.

    Attributes:
        source: Referencing resource id
        target: Referenced resource id
        attribute: Attribute name for GetAtt (None for Ref)
        path: Location of the reference inside the source (Properties.X[0])
    """
    source: str
    target: str
    attribute: Optional[str]
    path: str

    @property
    def property(self) -> Optional[str]:
        """Top-level property name holding the reference (None for metadata)."""
        if not self.path.startswith('Properties.'):
            return None
        rest = self.path[len('Properties.'):]
        for sep in ('.', '['):
            rest = rest.split(sep, 1)[0]
        return rest


@dataclass(frozen=True)
class ResourceNode:
    """A resource in the dependency graph.

    Attributes:
        id: Logical id
        type: Resource type tag
        properties: Property bag as a tagged value tree
        metadata: Metadata bag as a tagged value tree
        depends_on: Explicit and inferred dependency ids
        explicit_depends_on: DependsOn ids only
        references: Resource references found in properties/metadata
        deletion_policy: Delete or Retain
        timeout: Per-resource wait bound in seconds (None = engine default)
    """
    id: str
    type: str
    properties: MapValue
    metadata: MapValue
    depends_on: frozenset
    explicit_depends_on: frozenset
    references: tuple
    deletion_policy: str = 'Delete'
    timeout: Optional[float] = None

    def references_to(self, target: str) -> list[Reference]:
        return [r for r in self.references if r.target == target]

    def __repr__(self) -> str:
        return f"ResourceNode({self.id}, type={self.type}, deps={sorted(self.depends_on)})"


class ResourceGraph:
    """Dependency graph over a template's resources.

    Edges point from a resource to the resources it depends on.
    """

    def __init__(self, nodes: dict[str, ResourceNode], outputs: Optional[dict[str, Value]] = None):
        self._nodes = dict(nodes)
        self.outputs: dict[str, Value] = dict(outputs or {})
        self._dependents: dict[str, set[str]] = {rid: set() for rid in self._nodes}
        for node in self._nodes.values():
            for dep in node.depends_on:
                self._dependents[dep].add(node.id)

    @property
    def nodes(self) -> dict[str, ResourceNode]:
        return dict(self._nodes)

    @property
    def ids(self) -> list[str]:
        return sorted(self._nodes)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, resource_id: str) -> ResourceNode:
        """Get a ResourceNode by id.

        Raises:
            KeyError: If resource id not found
        """
        return self._nodes[resource_id]

    def dependencies(self, resource_id: str) -> set[str]:
        """Direct dependencies of a resource."""
        return set(self._nodes[resource_id].depends_on)

    def dependents(self, resource_id: str) -> set[str]:
        """Resources that directly depend on a resource."""
        return set(self._dependents[resource_id])

    def transitive_dependencies(self, resource_id: str) -> set[str]:
        return _closure(resource_id, self.dependencies)

    def transitive_dependents(self, resource_id: str) -> set[str]:
        return _closure(resource_id, self.dependents)

    def topological_order(self) -> list[str]:
        """Resource ids with every dependency before its dependents.

        Ties are broken by lexical id order, so the result is deterministic.
        """
        return topological_sort(self._nodes, {rid: n.depends_on for rid, n in self._nodes.items()})

    def reverse_order(self) -> list[str]:
        """Dependents before dependencies (destroy order)."""
        return list(reversed(self.topological_order()))

    def parallel_groups(self) -> list[list[str]]:
        """Waves of resources that can be provisioned concurrently.

        Wave N holds resources whose dependencies all sit in earlier waves.
        """
        level: dict[str, int] = {}
        for rid in self.topological_order():
            deps = self._nodes[rid].depends_on
            level[rid] = max((level[d] + 1 for d in deps), default=0)
        waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for rid in sorted(level):
            waves[level[rid]].append(rid)
        return waves


def _closure(start: str, step) -> set[str]:
    seen: set[str] = set()
    stack = list(step(start))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(step(current))
    return seen


def topological_sort(ids: Iterable[str], deps: dict[str, Iterable[str]]) -> list[str]:
    """Kahn's algorithm with lexical tie-break.

    Dependencies outside `ids` are ignored.

    Raises:
        CycleError: If the dependency relation has a cycle
    """
    members = set(ids)
    remaining = {rid: {d for d in deps.get(rid, ()) if d in members} for rid in members}
    dependents: dict[str, set[str]] = {rid: set() for rid in members}
    for rid, rdeps in remaining.items():
        for dep in rdeps:
            dependents[dep].add(rid)

    ready = [rid for rid, rdeps in remaining.items() if not rdeps]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        rid = heapq.heappop(ready)
        ordered.append(rid)
        for dependent in dependents[rid]:
            remaining[dependent].discard(rid)
            if not remaining[dependent]:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(members):
        left = {rid: remaining[rid] for rid in members if rid not in set(ordered)}
        raise CycleError(_find_cycle(left) or sorted(left))
    return ordered


def _find_cycle(deps: dict[str, Iterable[str]]) -> Optional[list[str]]:
    """Find one cycle path using DFS with a recursion stack.

    Returns the cycle as a closed path (e.g. ['A', 'B', 'A']), or None.
    """
    visited: set[str] = set()
    in_stack: set[str] = set()
    path: list[str] = []

    def _visit(rid: str) -> Optional[list[str]]:
        if rid in in_stack:
            return path[path.index(rid):] + [rid]
        if rid in visited:
            return None
        visited.add(rid)
        in_stack.add(rid)
        path.append(rid)
        for dep in sorted(deps.get(rid, ())):
            if dep not in deps:
                continue
            cycle = _visit(dep)
            if cycle:
                return cycle
        path.pop()
        in_stack.discard(rid)
        return None

    for rid in sorted(deps):
        cycle = _visit(rid)
        if cycle:
            return cycle
    return None


def build_graph(template: Template) -> ResourceGraph:
    """Build the dependency graph for a template.

    Checks for:
    - References to unknown names (Ref/GetAtt/Sub)
    - GetAtt on a parameter or pseudo parameter
    - DependsOn entries that are not resources
    - Cycles in the dependency relation (including self-references)

    Raises:
        UnresolvedReferenceError: If a reference cannot be satisfied
        CycleError: If the dependency graph is not acyclic
    """
    resource_ids = set(template.resources)
    parameter_names = set(template.parameters)

    def _check(source: str, target: str, attribute: Optional[str], path: str) -> bool:
        """Validate one reference; True if it points at a resource."""
        if target in resource_ids:
            return True
        if target in parameter_names or target in PSEUDO_PARAMETERS:
            if attribute is not None:
                raise UnresolvedReferenceError(
                    f"GetAtt {target}.{attribute} at {path}: '{target}' is a parameter, not a resource",
                    resource_id=source,
                )
            return False
        kind = 'GetAtt' if attribute is not None else 'Ref'
        raise UnresolvedReferenceError(
            f"{kind} at {path} names unknown resource or parameter '{target}'",
            resource_id=source,
        )

    nodes: dict[str, ResourceNode] = {}
    for rid, definition in template.resources.items():
        properties = parse_value(definition.properties, 'Properties')
        metadata = parse_value(definition.metadata, 'Metadata')

        references = []
        for bag, prefix in ((properties, 'Properties'), (metadata, 'Metadata')):
            for target, attribute, path in iter_references(bag, prefix):
                if _check(rid, target, attribute, path):
                    references.append(Reference(rid, target, attribute, path))

        for dep in definition.depends_on:
            if dep not in resource_ids:
                raise UnresolvedReferenceError(
                    f"DependsOn names unknown resource '{dep}'", resource_id=rid
                )

        depends_on = frozenset(definition.depends_on) | {r.target for r in references}
        if rid in depends_on:
            raise CycleError([rid, rid])

        nodes[rid] = ResourceNode(
            id=rid,
            type=definition.type,
            properties=properties,
            metadata=metadata,
            depends_on=frozenset(depends_on),
            explicit_depends_on=frozenset(definition.depends_on),
            references=tuple(references),
            deletion_policy=definition.deletion_policy,
            timeout=definition.timeout,
        )

    outputs: dict[str, Value] = {}
    for name, output in template.outputs.items():
        value = parse_value(output.value, f'Outputs.{name}.Value')
        for target, attribute, path in iter_references(value, f'Outputs.{name}.Value'):
            _check(f'Outputs.{name}', target, attribute, path)
        outputs[name] = value

    cycle = _find_cycle({rid: n.depends_on for rid, n in nodes.items()})
    if cycle:
        raise CycleError(cycle)

    graph = ResourceGraph(nodes, outputs)
    logger.debug(f"Built graph: {len(graph)} resource(s), waves={graph.parallel_groups()}")
    return graph
