"""
Dependency graph builder.

Scans every node's expressions for references and turns them into edges over
registry indices. Cycle detection and topological ordering are plain index
operations; teardown order is the same order reversed.
"""
import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from convergent.engine import functions
from convergent.engine.registry import Registry
from convergent.errors import CycleError, UnresolvedReferenceError
from convergent.models.expression import (
    COUNT_ROOT,
    DEPLOYMENT_ROOT,
    LOCAL_ROOT,
    VARIABLE_ROOT,
    Call,
    Expression,
    Reference,
)
from convergent.models.resource import Edge, NodeKind, ResourceNode

logger = logging.getLogger(__name__)

DEPLOYMENT_FIELDS = ("suffix",)


@dataclass
class DAG:
    addresses: List[str]
    edges: List[Edge]
    producers: List[Set[int]] = field(default_factory=list)
    consumers: List[Set[int]] = field(default_factory=list)
    order: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.addresses)

    def topological_order(self) -> List[str]:
        return [self.addresses[i] for i in self.order]

    def reverse_order(self) -> List[str]:
        return [self.addresses[i] for i in reversed(self.order)]

    def dependencies_of(self, address: str) -> List[str]:
        idx = self.addresses.index(address)
        return sorted(self.addresses[p] for p in self.producers[idx])

    def dependents_of(self, address: str) -> List[str]:
        """Every node that transitively reads ``address``."""
        start = self.addresses.index(address)
        seen: Set[int] = set()
        stack = [start]
        while stack:
            for c in self.consumers[stack.pop()]:
                if c not in seen:
                    seen.add(c)
                    stack.append(c)
        return [self.addresses[i] for i in sorted(seen)]

    def edge_pairs(self) -> List[tuple]:
        """(consumer, producer) address pairs, one per connected node pair."""
        pairs = []
        seen = set()
        for e in self.edges:
            key = (e.consumer, e.producer)
            if key not in seen:
                seen.add(key)
                pairs.append((self.addresses[e.consumer], self.addresses[e.producer]))
        return pairs


def _check_calls(node: ResourceNode, expr: Expression, errors: List[str]) -> None:
    for sub in expr.walk():
        if isinstance(sub, Call) and not functions.is_known(sub.name):
            errors.append(f"{node.address}: unknown function {sub.name!r}")


def _producer_index(ref: Reference, registry: Registry, node: ResourceNode, errors: List[str]) -> Optional[int]:
    """Validate one reference; return the producing node's index, if any."""
    root = ref.root
    if len(ref.parts) < 2:
        errors.append(f"{node.address}: incomplete reference {ref}")
        return None

    if root == VARIABLE_ROOT:
        if ref.parts[1] not in registry.variables:
            errors.append(f"{node.address}: reference to undeclared input {ref}")
        return None
    if root == DEPLOYMENT_ROOT:
        if ref.parts[1] not in DEPLOYMENT_FIELDS:
            errors.append(f"{node.address}: unknown deployment attribute {ref}")
        return None
    if root == COUNT_ROOT:
        errors.append(f"{node.address}: {ref} used outside a counted declaration")
        return None

    address = ref.address
    producer = registry.get(address)
    if producer is None:
        if address in registry.counted:
            errors.append(f"{node.address}: {ref} refers to a counted resource; use an index like {address}[0]")
        elif root == LOCAL_ROOT:
            errors.append(f"{node.address}: reference to undeclared local {ref}")
        else:
            errors.append(f"{node.address}: reference to undeclared resource {ref}")
        return None
    if producer.kind == NodeKind.ACTION and ref.field is not None and ref.field not in producer.exports:
        errors.append(
            f"{node.address}: {address} does not export {ref.field!r} "
            f"(exports: {', '.join(producer.exports) or 'none'})"
        )
        return None
    return registry.index_of(address)


def _find_cycle(producers: List[Set[int]]) -> Optional[List[int]]:
    """Depth-first search with recursion-stack marking; returns one cycle if any."""
    white, grey, black = 0, 1, 2
    colour = [white] * len(producers)

    for start in range(len(producers)):
        if colour[start] != white:
            continue
        stack = [(start, iter(sorted(producers[start])))]
        path = [start]
        colour[start] = grey
        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                colour[node] = black
                stack.pop()
                path.pop()
                continue
            if colour[nxt] == grey:
                return path[path.index(nxt):]
            if colour[nxt] == white:
                colour[nxt] = grey
                stack.append((nxt, iter(sorted(producers[nxt]))))
                path.append(nxt)
    return None


def _topological_order(producers: List[Set[int]], consumers: List[Set[int]]) -> List[int]:
    """Kahn's algorithm; ties broken by declaration order so the result is unique."""
    remaining = [len(p) for p in producers]
    ready = [i for i, n in enumerate(remaining) if n == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        i = heapq.heappop(ready)
        order.append(i)
        for c in consumers[i]:
            remaining[c] -= 1
            if remaining[c] == 0:
                heapq.heappush(ready, c)
    return order


def build(registry: Registry) -> DAG:
    """
    Build the dependency DAG of ``registry``.

    Raises UnresolvedReferenceError for references to missing nodes, inputs or
    action exports, and CycleError naming every node on a cycle.
    """
    errors: List[str] = []
    edges: List[Edge] = []
    seen: Set[tuple] = set()
    n = len(registry)
    producers: List[Set[int]] = [set() for _ in range(n)]
    consumers: List[Set[int]] = [set() for _ in range(n)]

    for idx, node in enumerate(registry):
        refs = []
        for expr in node.properties.values():
            _check_calls(node, expr, errors)
            refs.extend((ref, ref.field) for ref in expr.references())
        refs.extend((ref, None) for ref in node.depends_on)

        for ref, f in refs:
            p = _producer_index(ref, registry, node, errors)
            if p is None:
                continue
            key = (idx, p, f)
            if key in seen:
                continue
            seen.add(key)
            edges.append(Edge(consumer=idx, producer=p, field=f))
            producers[idx].add(p)
            consumers[p].add(idx)

    for name, out in registry.outputs.items():
        _check_output(name, out.value, registry, errors)

    if errors:
        raise UnresolvedReferenceError(errors)

    cycle = _find_cycle(producers)
    if cycle is not None:
        names = [registry[i].address for i in cycle]
        logger.error("dependency cycle detected: %s", " -> ".join(names))
        raise CycleError(names)

    order = _topological_order(producers, consumers)
    dag = DAG(
        addresses=registry.addresses,
        edges=edges,
        producers=producers,
        consumers=consumers,
        order=order,
    )
    logger.debug("graph: %d node(s), %d edge(s)", len(dag), len(edges))
    return dag


def _check_output(name: str, expr: Expression, registry: Registry, errors: List[str]) -> None:
    holder = ResourceNode(kind=NodeKind.LOCAL, resource_type="output", name=name)
    _check_calls(holder, expr, errors)
    for ref in expr.references():
        _producer_index(ref, registry, holder, errors)
