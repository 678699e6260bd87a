# dag.py
from __future__ import annotations

from typing import Dict, List, Mapping, Set

from .errors import CycleError, UnknownDependencyError
from .model import Job


def compute_job_order(jobs: Mapping[str, Job]) -> List[str]:
    """
    Return job ids so that every job comes after everything it `needs`.

    Depth-first over jobs in declaration order. Each branch carries its own
    copy of the ancestor set, so diamonds (a <- b, a <- c, b,c <- d) are
    fine while a job reached again through its own ancestors is a cycle.

    Raises:
      CycleError: names a job on the cycle
      UnknownDependencyError: a `needs` entry is not a job id
    """
    visited: Set[str] = set()
    order: List[str] = []

    def visit(job_id: str, ancestors: frozenset[str]) -> None:
        if job_id in ancestors:
            raise CycleError(job_id)
        if job_id in visited:
            return

        branch = ancestors | {job_id}
        for dep in jobs[job_id].needs:
            if dep not in jobs:
                raise UnknownDependencyError(job_id, dep)
            visit(dep, branch)

        visited.add(job_id)
        order.append(job_id)

    for job_id in jobs:
        visit(job_id, frozenset())

    return order


def dependency_levels(jobs: Mapping[str, Job]) -> List[List[str]]:
    """
    Group job ids into levels. A job sits one level past the deepest job it
    needs, so no two jobs of a level depend on each other. Within a level
    jobs keep their `compute_job_order` order.
    """
    order = compute_job_order(jobs)
    depth: Dict[str, int] = {}
    for job_id in order:
        depth[job_id] = 1 + max((depth[dep] for dep in jobs[job_id].needs), default=-1)

    levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for job_id in order:
        levels[depth[job_id]].append(job_id)
    return levels
