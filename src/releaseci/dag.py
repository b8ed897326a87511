# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ConfigurationError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"duplicate job names: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set:
                raise ConfigurationError(
                    f"job '{job.name}' needs missing job '{dep}'",
                    details={"known": sorted(name_set)},
                )
            # edge dep -> job (dep runs first)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def execution_order(jobs: List[Job]) -> List[Job]:
    """
    Deterministic topological order.

    Ties keep the declaration order, so a workflow without `needs` runs its
    jobs exactly as written.
    """
    adj, indeg = build_dag(jobs)
    position = {j.name: i for i, j in enumerate(jobs)}
    by_name = {j.name: j for j in jobs}

    indeg = dict(indeg)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=position.__getitem__))
    order: List[str] = []

    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(adj[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(jobs):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"job dependencies form a cycle; stuck jobs: {stuck}")

    return [by_name[n] for n in order]
