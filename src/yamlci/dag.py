# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import CyclicDependency, MalformedDefinition
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: iterable[str] (ids of jobs that must finish BEFORE this job)

    Returns:
      adj:   need -> set of jobs that need it
      indeg: job -> number of unfinished needs
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise MalformedDefinition("jobs", f"duplicate job ids: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in jobs:
        for need in job.needs:
            if need not in id_set:
                raise MalformedDefinition(
                    f"jobs.{job.group or job.id}.needs",
                    f"unknown job {need!r}; known jobs: {sorted(id_set)}",
                )
            # Edge need -> job.id (need must run before job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def _cycle_members(adj: Dict[str, Set[str]], stuck: Set[str]) -> Set[str]:
    """
    Narrow the nodes Kahn's algorithm could not release down to the ones on a
    cycle, by peeling off nodes with no edge back into the stuck set.
    """
    members = set(stuck)
    changed = True
    while changed:
        changed = False
        for n in list(members):
            if not (adj[n] & members):
                members.discard(n)
                changed = True
    return members


def topo_levels(jobs: List[Job]) -> List[List[str]]:
    """
    Convert the job graph into topological "levels" (stages).
    Each stage can run in parallel; within a stage jobs keep declaration order.

    Raises:
        CyclicDependency: naming the jobs that participate in a cycle.
    """
    adj, indeg = build_dag(jobs)
    order = {j.id: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n in order if indeg[n] == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj[node], key=order.__getitem__):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level, key=order.__getitem__))

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CyclicDependency(_cycle_members(adj, stuck) or stuck)

    return levels


def execution_order(jobs: List[Job]) -> List[str]:
    """A flat order in which every job follows all of its needs."""
    return [n for level in topo_levels(jobs) for n in level]


class ReadyTracker:
    """
    Event-driven readiness bookkeeping for the scheduler.

    Call `complete(job_id)` whenever a job reaches a terminal state; it returns
    the dependents that just became ready, in declaration order.
    """

    def __init__(self, jobs: List[Job]):
        topo_levels(jobs)  # validates + rejects cycles
        self.adj, self._indeg = build_dag(jobs)
        self.order = {j.id: i for i, j in enumerate(jobs)}
        self._done: Set[str] = set()

    def initial(self) -> List[str]:
        return [n for n in self.order if self._indeg[n] == 0]

    def complete(self, job_id: str) -> List[str]:
        if job_id in self._done:
            return []
        self._done.add(job_id)
        ready = []
        for child in self.adj[job_id]:
            self._indeg[child] -= 1
            if self._indeg[child] == 0:
                ready.append(child)
        return sorted(ready, key=self.order.__getitem__)

    def descendants(self, job_id: str) -> List[str]:
        """Every job that (transitively) needs `job_id`, in declaration order."""
        seen: Set[str] = set()
        stack = list(self.adj[job_id])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.adj[n])
        return sorted(seen, key=self.order.__getitem__)


def check_acyclic(jobs: Iterable[Job]) -> None:
    topo_levels(list(jobs))
