# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError, CyclicDependency
from .model import JobSpec


def build_graph(jobs: Iterable[JobSpec]) -> Tuple[Dict[str, JobSpec], Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from JobSpec objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Returns:
      (jobs by name, adjacency dep -> dependents, in-degree per job)
    """
    by_name: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in by_name:
            raise ConfigurationError(f"duplicate job name: {j.name}")
        by_name[j.name] = j

    adj: Dict[str, Set[str]] = {name: set() for name in by_name}   # dep -> dependents
    indeg: Dict[str, int] = {name: 0 for name in by_name}          # in-degree per job

    for j in by_name.values():
        for d in j.needs:
            if d not in by_name:
                raise ConfigurationError(
                    f"job {j.name!r} needs missing job {d!r}",
                    details={"known": ",".join(sorted(by_name))},
                )
            # Edge d -> j.name (d must run before j)
            if j.name not in adj[d]:
                adj[d].add(j.name)
                indeg[j.name] += 1

    return by_name, adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage could run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        raise CyclicDependency(sorted(n for n, d in indeg.items() if d > 0))

    return levels


def descendants(adj: Dict[str, Set[str]], name: str) -> List[str]:
    """Every job reachable from `name`, nearest first."""
    seen: Set[str] = set()
    order: List[str] = []
    q = deque(sorted(adj.get(name, set())))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        order.append(node)
        q.extend(sorted(adj.get(node, set())))
    return order
