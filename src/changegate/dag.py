# dag.py
from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .errors import (
    CyclicDependencyError,
    DuplicateJobError,
    UnknownCategoryError,
    UnknownDependencyError,
)
from .model import Category, Job


def build_dag(jobs: Sequence[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs / job.after: names of jobs that must finish BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobError(dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.upstream:
            if dep not in name_set:
                raise UnknownDependencyError(job.name, dep, sorted(name_set))
            # Edge dep -> job.name (dep must finish before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_order(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    declared: Sequence[str],
) -> List[str]:
    """Kahn's algorithm; among ready jobs the earliest declared goes first."""
    position = {name: i for i, name in enumerate(declared)}
    indeg = dict(indeg)  # copy (we mutate it)
    heap = [(position[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)

    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj.get(node, set()):
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (position[child], child))

    if len(order) != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CyclicDependencyError(remaining)

    return order


class JobGraph:
    """
    Static job graph, validated on construction.

    Raises DuplicateJobError, UnknownDependencyError, CyclicDependencyError,
    and UnknownCategoryError when `categories` is given and a predicate refers
    to a category that is not defined.
    """

    def __init__(self, jobs: Iterable[Job], categories: Iterable[Category] | None = None):
        self.jobs: List[Job] = list(jobs)

        self._adj, indeg = build_dag(self.jobs)
        self._by_name = {j.name: j for j in self.jobs}
        self.order: List[str] = topo_order(self._adj, indeg, [j.name for j in self.jobs])
        self._position = {name: i for i, name in enumerate(self.order)}

        if categories is not None:
            self._check_categories([c.name for c in categories])

    def _check_categories(self, known: List[str]) -> None:
        for job in self.jobs:
            exprs = [(job.name, job.when)]
            exprs += [(f"{job.name}/{s.name}", s.when) for s in job.steps]
            for owner, expr in exprs:
                if expr is None:
                    continue
                for cat in sorted(expr.categories()):
                    if cat not in known:
                        raise UnknownCategoryError(owner, cat, sorted(known))

    def __getitem__(self, name: str) -> Job:
        return self._by_name[name]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.jobs)

    def dependencies(self, name: str) -> List[str]:
        return self._by_name[name].upstream

    def dependents(self, name: str) -> List[str]:
        return sorted(self._adj[name], key=self._position.__getitem__)

    def position(self, name: str) -> int:
        return self._position[name]

    def ordered_jobs(self) -> List[Job]:
        return [self._by_name[n] for n in self.order]
