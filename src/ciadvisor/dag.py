# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import CycleError
from .model import PipelineDefinition

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class DependencyGraph:
    """
    Job dependency graph.

    edges[name] -> sorted dependencies of `name` (jobs that must run before it).
    Dangling dependencies are kept out of `edges` and recorded in `dangling`.
    """
    nodes: Tuple[str, ...]
    edges: Dict[str, Tuple[str, ...]]
    unschedulable: Tuple[str, ...] = ()
    dangling: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def dependencies(self, name: str) -> Tuple[str, ...]:
        return self.edges.get(name, ())

    def dependents(self, name: str) -> Tuple[str, ...]:
        return tuple(sorted(n for n, deps in self.edges.items() if name in deps))

    def without_edges(self, removed: Mapping[str, Iterable[str]]) -> "DependencyGraph":
        """Copy of this graph with the given dependency edges dropped."""
        edges = {
            n: tuple(d for d in deps if d not in set(removed.get(n, ())))
            for n, deps in self.edges.items()
        }
        for n, missing in self.dangling.items():
            edges[n] = edges.get(n, ()) + missing
        return build_edge_graph(self.nodes, edges)


@dataclass(frozen=True)
class ExecutionPlan:
    """Waves of jobs; every job in a wave only depends on earlier waves."""
    waves: Tuple[Tuple[str, ...], ...]
    unschedulable: Tuple[str, ...] = ()

    @property
    def parallelizable(self) -> Tuple[str, ...]:
        """Wave 0 plus every wave that holds more than one job."""
        names: List[str] = []
        for i, wave in enumerate(self.waves):
            if i == 0 or len(wave) > 1:
                names.extend(wave)
        return tuple(sorted(names))

    @property
    def order(self) -> Tuple[str, ...]:
        return tuple(name for wave in self.waves for name in wave)

    def wave_of(self, name: str) -> Optional[int]:
        for i, wave in enumerate(self.waves):
            if name in wave:
                return i
        return None


def _find_cycle(nodes: Tuple[str, ...], edges: Mapping[str, Tuple[str, ...]]) -> Optional[List[str]]:
    color = {n: _WHITE for n in nodes}
    path: List[str] = []

    for start in nodes:
        if color[start] != _WHITE:
            continue
        # explicit stack of (node, remaining deps) so long chains do not recurse
        color[start] = _GREY
        path.append(start)
        stack = [(start, iter(edges.get(start, ())))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if color[dep] == _GREY:
                    return path[path.index(dep):]
                if color[dep] == _WHITE:
                    color[dep] = _GREY
                    path.append(dep)
                    stack.append((dep, iter(edges.get(dep, ()))))
                    break
            else:
                stack.pop()
                path.pop()
                color[node] = _BLACK
    return None


def build_edge_graph(nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> DependencyGraph:
    """
    Build a dependency graph over arbitrary names.

    Raises CycleError with the exact cycle members (in traversal order).
    Edges to unknown names are dangling: the node and everything that
    transitively depends on it become unschedulable.
    """
    names = tuple(sorted(set(nodes)))
    known = set(names)

    graph_edges: Dict[str, Tuple[str, ...]] = {}
    dangling: Dict[str, Tuple[str, ...]] = {}
    for n in names:
        deps = list(dict.fromkeys(edges.get(n, ())))
        graph_edges[n] = tuple(sorted(d for d in deps if d in known))
        missing = tuple(sorted(d for d in deps if d not in known))
        if missing:
            dangling[n] = missing

    cycle = _find_cycle(names, graph_edges)
    if cycle:
        raise CycleError(members=tuple(cycle))

    # dependents of a dangling job are unschedulable too
    reverse: Dict[str, Set[str]] = {n: set() for n in names}
    for n, deps in graph_edges.items():
        for d in deps:
            reverse[d].add(n)

    blocked: Set[str] = set(dangling)
    q = deque(sorted(blocked))
    while q:
        node = q.popleft()
        for child in sorted(reverse[node]):
            if child not in blocked:
                blocked.add(child)
                q.append(child)

    return DependencyGraph(
        nodes=names,
        edges=graph_edges,
        unschedulable=tuple(sorted(blocked)),
        dangling=dangling,
    )


def build_graph(definition: PipelineDefinition) -> DependencyGraph:
    return build_edge_graph(
        definition.jobs.keys(),
        {name: job.needs for name, job in definition.jobs.items()},
    )


def schedule(graph: DependencyGraph) -> ExecutionPlan:
    """
    Convert the graph into topological waves (stages).
    Each wave can run in parallel; ties are broken lexicographically.
    """
    blocked = set(graph.unschedulable)
    indeg: Dict[str, int] = {}
    adj: Dict[str, Set[str]] = {}
    for n in graph.nodes:
        if n in blocked:
            continue
        indeg[n] = len(graph.edges.get(n, ()))
        adj.setdefault(n, set())
        for d in graph.edges.get(n, ()):
            adj.setdefault(d, set()).add(n)

    waves: List[Tuple[str, ...]] = []
    processed = 0
    current = sorted(n for n, d in indeg.items() if d == 0)

    while current:
        waves.append(tuple(current))
        processed += len(current)
        nxt: List[str] = []
        for node in current:
            for child in adj.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        current = sorted(nxt)

    if processed != len(indeg):
        remaining = tuple(sorted(n for n, d in indeg.items() if d > 0))
        raise CycleError(members=remaining)

    return ExecutionPlan(waves=tuple(waves), unschedulable=tuple(sorted(blocked)))


def critical_path(
    graph: DependencyGraph,
    durations: Mapping[str, int],
) -> Tuple[Tuple[str, ...], int]:
    """
    Longest-duration dependency chain over the schedulable jobs.

    Returns (chain, total seconds). Jobs missing from `durations` count as 0.
    """
    plan = schedule(graph)
    finish: Dict[str, int] = {}
    best_dep: Dict[str, Optional[str]] = {}

    for name in plan.order:
        prev: Optional[str] = None
        start = 0
        for dep in graph.edges.get(name, ()):
            if finish[dep] > start:
                start = finish[dep]
                prev = dep
        finish[name] = start + int(durations.get(name, 0))
        best_dep[name] = prev

    if not finish:
        return (), 0

    end = max(sorted(finish), key=lambda n: finish[n])
    chain: List[str] = []
    node: Optional[str] = end
    while node is not None:
        chain.append(node)
        node = best_dep[node]
    return tuple(reversed(chain)), finish[end]
