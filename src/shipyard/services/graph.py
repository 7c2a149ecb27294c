"""Dependency graph builder: turns work items into an execution order.

Ordering uses Kahn's algorithm over intra-batch edges only; references to
items outside the batch are treated as already resolved. Cycles never fail
the build: their members are reported separately and appended to the order
so unrelated work still runs.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from shipyard.models.entities import WorkItem

log = logging.getLogger(__name__)

DEFAULT_DIFFICULTY = 3


@dataclass(frozen=True, slots=True)
class GraphNode:
    ref: str
    depends_on: tuple[str, ...] = ()
    difficulty: int | None = None


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    order: list[str]
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)


def index_refs(items: Iterable[WorkItem]) -> dict[str, list[str]]:
    """Map bare ids to every qualified reference carrying that id."""
    refs_by_id: dict[str, list[str]] = {}
    for item in items:
        refs = refs_by_id.setdefault(item.id, [])
        if item.ref not in refs:
            refs.append(item.ref)
    return refs_by_id


def normalize_dependency_ref(
    raw: object,
    fallback_source: str,
    refs_by_id: Mapping[str, Sequence[str]],
) -> str | None:
    """Qualify one dependency reference as ``source#id``.

    Qualified references are kept. A bare id resolves to the unique item that
    carries it; when it is ambiguous or unknown it is qualified with the
    referencing item's own source.
    """
    text = str(raw).strip() if raw is not None else ""
    if not text:
        return None
    source, sep, ident = text.partition("#")
    if sep:
        if source and ident:
            return f"{source.strip()}#{ident.strip()}"
        text = ident.strip() or source.strip()
        if not text:
            return None
    matches = refs_by_id.get(text, ())
    if len(matches) == 1:
        return matches[0]
    return f"{fallback_source}#{text}"


def qualify_dependencies(items: Sequence[WorkItem]) -> None:
    """Rewrite every item's ``depends_on`` in place to qualified, de-duplicated refs."""
    refs_by_id = index_refs(items)
    for item in items:
        qualified: list[str] = []
        for raw in item.depends_on:
            ref = normalize_dependency_ref(raw, item.source, refs_by_id)
            if ref is not None and ref not in qualified:
                qualified.append(ref)
        item.depends_on = qualified


def _walk_cycle(start: str, deps: Mapping[str, list[str]], unresolved: set[str]) -> list[str]:
    path: list[str] = []
    seen: dict[str, int] = {}
    node: str | None = start
    while node is not None and node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next((dep for dep in deps[node] if dep in unresolved), None)
    if node is None:
        return []
    return path[seen[node] :]


def build_dependency_graph(nodes: Sequence[GraphNode]) -> DependencyGraph:
    """Topologically order *nodes*; duplicate refs keep their first occurrence."""
    unique: dict[str, GraphNode] = {}
    for node in nodes:
        unique.setdefault(node.ref, node)
    position = {ref: index for index, ref in enumerate(unique)}

    deps: dict[str, list[str]] = {}
    dependents: dict[str, list[str]] = {ref: [] for ref in unique}
    in_degree: dict[str, int] = {}
    for ref, node in unique.items():
        internal = [dep for dep in dict.fromkeys(node.depends_on) if dep in unique]
        deps[ref] = internal
        in_degree[ref] = len(internal)
        for dep in internal:
            dependents[dep].append(ref)

    def priority(ref: str) -> tuple[int, int]:
        difficulty = unique[ref].difficulty
        return (DEFAULT_DIFFICULTY if difficulty is None else difficulty, position[ref])

    queue = deque(sorted((ref for ref, degree in in_degree.items() if degree == 0), key=priority))
    order: list[str] = []
    while queue:
        ref = queue.popleft()
        order.append(ref)
        for dependent in dependents[ref]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    cycles: list[list[str]] = []
    if len(order) < len(unique):
        emitted = set(order)
        unresolved = {ref for ref in unique if ref not in emitted}
        known: set[frozenset[str]] = set()
        for ref in unique:
            if ref not in unresolved:
                continue
            cycle = _walk_cycle(ref, deps, unresolved)
            members = frozenset(cycle)
            if cycle and members not in known:
                known.add(members)
                cycles.append(cycle)
        order.extend(ref for ref in unique if ref in unresolved)
        log.warning("Dependency cycles detected: %s", cycles)

    return DependencyGraph(order=order, cycles=cycles)


def order_work_items(items: Sequence[WorkItem]) -> tuple[list[WorkItem], list[list[str]]]:
    """Order work items by dependency; references must already be qualified."""
    by_ref: dict[str, WorkItem] = {}
    for item in items:
        by_ref.setdefault(item.ref, item)
    graph = build_dependency_graph(
        [
            GraphNode(ref=item.ref, depends_on=tuple(item.depends_on), difficulty=item.difficulty)
            for item in by_ref.values()
        ]
    )
    return [by_ref[ref] for ref in graph.order], graph.cycles


__all__ = [
    "DependencyGraph",
    "GraphNode",
    "build_dependency_graph",
    "index_refs",
    "normalize_dependency_ref",
    "order_work_items",
    "qualify_dependencies",
]
