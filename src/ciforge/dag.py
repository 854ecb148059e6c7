# dag.py
from __future__ import annotations

import itertools
from collections import abc, deque
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .errors import CycleError, WorkflowError
from .model import Job, JobInstance

WHITE, GREY, BLACK = 0, 1, 2


def _axis_values(name: str, values: Any) -> List[Any]:
    if isinstance(values, (str, bytes)) or not isinstance(values, abc.Sequence):
        raise WorkflowError(f"matrix axis {name!r} must be a list of values, got {values!r}")
    if not values:
        raise WorkflowError(f"matrix axis {name!r} has no values")
    return list(values)


def _bindings(kind: str, entries: Any) -> List[Mapping[str, Any]]:
    entries = entries or []
    if isinstance(entries, (str, bytes)) or not isinstance(entries, abc.Sequence):
        raise WorkflowError(f"matrix {kind} must be a list of mappings, got {entries!r}")
    for entry in entries:
        if not isinstance(entry, abc.Mapping):
            raise WorkflowError(f"matrix {kind} entries must be mappings, got {entry!r}")
    return list(entries)


def expand_matrix(matrix: Mapping[str, Any]) -> List[Tuple[Tuple[str, Any], ...]]:
    """
    Expand a matrix declaration into its combinations, axis order preserved.

    Besides plain axes (`{"node": [18, 20]}`) two special keys are honoured:
      - exclude: list of partial bindings; a combination matching all keys of
                 any entry is dropped
      - include: list of full bindings appended as extra combinations; keys
                 are emitted in axis order, unknown keys after them
    """
    axes = {k: _axis_values(k, v) for k, v in matrix.items() if k not in ("include", "exclude")}
    keys = list(axes)

    combos: List[Tuple[Tuple[str, Any], ...]] = []
    if axes:
        for values in itertools.product(*(axes[k] for k in keys)):
            combos.append(tuple(zip(keys, values)))

    for ex in _bindings("exclude", matrix.get("exclude")):
        combos = [c for c in combos if not all(dict(c).get(k) == v for k, v in ex.items())]

    for inc in _bindings("include", matrix.get("include")):
        ordered = [k for k in keys if k in inc] + [k for k in inc if k not in axes]
        extra = tuple((k, inc[k]) for k in ordered)
        if all(dict(c) != dict(extra) for c in combos):
            combos.append(extra)

    return combos


class DependencyGraph:
    """
    Jobs and their `needs` edges, expanded into matrix instances.

    Nodes are JobInstance ids. An instance depends on every instance of each
    job it needs, so a matrix job acts as one barrier for its dependents.
    """

    def __init__(
        self,
        jobs: Sequence[Job],
        instances: List[JobInstance],
        deps: Dict[str, Set[str]],
    ):
        self.jobs: Dict[str, Job] = {j.name: j for j in jobs}
        self.instances: List[JobInstance] = instances
        self._by_id: Dict[str, JobInstance] = {i.id: i for i in instances}
        self._deps = deps
        self._dependents: Dict[str, Set[str]] = {i.id: set() for i in instances}
        for node, ds in deps.items():
            for d in ds:
                self._dependents[d].add(node)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, jobs: Iterable[Job]) -> "DependencyGraph":
        jobs = list(jobs)
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise WorkflowError(f"Duplicate job names found: {dupes}")

        name_set = set(names)
        for job in jobs:
            for need in job.needs:
                if need not in name_set:
                    raise WorkflowError(
                        f"Job '{job.name}' needs missing job '{need}'. "
                        f"Known jobs: {sorted(name_set)}"
                    )

        _check_acyclic(jobs)

        instances: List[JobInstance] = []
        by_job: Dict[str, List[str]] = {}
        for job in jobs:
            combos = expand_matrix(job.matrix) if job.matrix else [()]
            if not combos:
                raise WorkflowError(f"matrix of job '{job.name}' expands to no combinations")
            for combo in combos:
                inst = JobInstance(job=job, matrix=combo, index=len(instances))
                instances.append(inst)
                by_job.setdefault(job.name, []).append(inst.id)

        ids = [i.id for i in instances]
        if len(set(ids)) != len(ids):
            raise WorkflowError(f"Matrix expansion produced duplicate instances: {ids}")

        deps: Dict[str, Set[str]] = {}
        for inst in instances:
            deps[inst.id] = {d for need in inst.job.needs for d in by_job[need]}

        return cls(jobs, instances, deps)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.instances)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._by_id

    def instance(self, instance_id: str) -> JobInstance:
        return self._by_id[instance_id]

    def dependencies(self, instance_id: str) -> Set[str]:
        return set(self._deps[instance_id])

    def dependents(self, instance_id: str) -> Set[str]:
        return set(self._dependents[instance_id])

    def siblings(self, instance_id: str) -> List[str]:
        """Other matrix instances of the same job, declaration order."""
        name = self._by_id[instance_id].name
        return [i.id for i in self.instances if i.name == name and i.id != instance_id]

    def instances_of(self, job_name: str) -> List[str]:
        return [i.id for i in self.instances if i.name == job_name]

    def ready_jobs(self, completed: Set[str], started: Iterable[str] = ()) -> Set[str]:
        """Instances whose dependencies are all completed and which have not started."""
        started = set(started)
        return {
            i.id
            for i in self.instances
            if i.id not in completed
            and i.id not in started
            and self._deps[i.id] <= completed
        }

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages). Each stage can run in parallel.
        Instances keep declaration order inside a stage.
        """
        indeg = {i.id: len(self._deps[i.id]) for i in self.instances}
        order = {i.id: i.index for i in self.instances}
        q = deque(sorted((n for n, d in indeg.items() if d == 0), key=order.get))

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            nxt: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            levels.append(level)
            q.extend(sorted(nxt, key=order.get))
        return levels


def _check_acyclic(jobs: List[Job]) -> None:
    """
    Depth-first traversal with white/grey/black colouring. A `needs` edge
    into a grey (still visiting) job closes a cycle.
    """
    needs = {j.name: list(j.needs) for j in jobs}
    color = {j.name: WHITE for j in jobs}
    stack: List[str] = []

    def visit(name: str) -> None:
        color[name] = GREY
        stack.append(name)
        for dep in needs[name]:
            if color[dep] == GREY:
                start = stack.index(dep)
                raise CycleError(stack[start:] + [dep])
            if color[dep] == WHITE:
                visit(dep)
        stack.pop()
        color[name] = BLACK

    for j in jobs:
        if color[j.name] == WHITE:
            visit(j.name)
