# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import CacheSpec, Job, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    skip_on_cache_hit: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        env=env or {},
        continue_on_error=continue_on_error,
        timeout=timeout,
        skip_on_cache_hit=skip_on_cache_hit,
    )


def uses(
    name: str,
    action: str,
    /,
    *,
    with_: Optional[Dict[str, Any]] = None,
    id: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    **inputs: Any,
) -> Step:
    """
    Create an action step. Inputs go in `with_=` or as keyword arguments
    (underscores become dashes: retention_days -> retention-days).
    """
    merged = dict(with_ or {})
    merged.update({k.replace("_", "-"): v for k, v in inputs.items()})
    return Step(
        name=name,
        uses=action,
        with_=merged,
        id=id,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def cache(
    key: str,
    *paths: str,
    hash_files: Optional[List[str]] = None,
    restore_keys: Optional[List[str]] = None,
) -> CacheSpec:
    """cache("npm-{os}-{matrix.node}-{hash}", "node_modules", hash_files=["package-lock.json"])"""
    return CacheSpec(
        key=key,
        paths=list(paths),
        hash_files=list(hash_files or []),
        restore_keys=list(restore_keys or []),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str] | str] = None,
    if_: str | None = None,
    matrix: Optional[Dict[str, Any]] = None,
    fail_fast: bool = False,
    runs_on: str = "ubuntu-latest",
    env: Optional[Dict[str, str]] = None,
    cache: Optional[CacheSpec] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.run is None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=if_,
        matrix=dict(matrix or {}),
        fail_fast=fail_fast,
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: str | None = None
        self._matrix: dict[str, Any] = {}
        self._fail_fast = False
        self._runs_on = "ubuntu-latest"
        self._cache: CacheSpec | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def when(self, expression: str):
        self._condition = expression
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, /, **inputs):
        self._steps.append(uses(name, action, **inputs))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, fail_fast: bool = False, **axes: Iterable[Any]):
        self._matrix.update({k: list(v) for k, v in axes.items()})
        self._fail_fast = fail_fast
        return self

    def on(self, runs_on: str):
        self._runs_on = runs_on
        return self

    def with_cache(self, spec: CacheSpec):
        self._cache = spec
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            matrix=dict(self._matrix),
            fail_fast=self._fail_fast,
            runs_on=self._runs_on,
            env=dict(self._env),
            cache=self._cache,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Single-axis matrix helper.

    `as_dict()` feeds `job(matrix=...)` so one declaration becomes sibling
    instances in the graph. `jobs()` keeps the older style of stamping out
    independently named jobs from a builder.

    Example:
        job("test", sh("Test", "npm test"), matrix=matrix("node", [18, 20]).as_dict())
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def as_dict(self) -> Dict[str, List[Any]]:
        return {self.key: list(self.values)}

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Lists (e.g. from Matrix.jobs) are flattened.

        from ciforge import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out


workflow = wf  # backward-compat alias (avoid naming your function workflow if you use it)
