# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .cache import CacheKeyResolver
from .conditions import parse
from .dag import DependencyGraph, expand_matrix
from .errors import ExpressionError, WorkflowError
from .model import CacheSpec, Job, Step


# ----------------------------------------------------------------------
# Workflow loading (local python file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"ciforge_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from ciforge import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return jobs


# ----------------------------------------------------------------------
# Dict schemas (already-parsed definitions, e.g. from JSON)
# ----------------------------------------------------------------------

class StepModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    env: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    skip_on_cache_hit: bool = Field(default=False, alias="skip-on-cache-hit")

    @model_validator(mode="after")
    def _one_of_run_or_uses(self) -> "StepModel":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self) -> Step:
        lines = (self.run or "").strip().splitlines()
        name = self.name or self.uses or (f"Run {lines[0]}" if lines else "Run")
        return Step(
            name=name,
            run=self.run,
            uses=self.uses,
            with_={k: v for k, v in self.with_.items()},
            id=self.id,
            cwd=self.cwd,
            env={k: str(v) for k, v in self.env.items()},
            continue_on_error=self.continue_on_error,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes is not None else None,
            skip_on_cache_hit=self.skip_on_cache_hit,
        )


class CacheModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    key: str
    path: Union[str, List[str]] = Field(default_factory=list)
    hash_files: List[str] = Field(default_factory=list, alias="hash-files")
    restore_keys: List[str] = Field(default_factory=list, alias="restore-keys")

    def to_spec(self) -> CacheSpec:
        paths = [self.path] if isinstance(self.path, str) else list(self.path)
        return CacheSpec(
            key=self.key,
            paths=paths,
            hash_files=list(self.hash_files),
            restore_keys=list(self.restore_keys),
        )


class StrategyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(default=False, alias="fail-fast")

    @model_validator(mode="after")
    def _matrix_expands(self) -> "StrategyModel":
        try:
            expand_matrix(self.matrix)
        except WorkflowError as e:
            raise ValueError(str(e)) from e
        return self


class JobModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    runs_on: str = Field(default="ubuntu-latest", alias="runs-on")
    strategy: StrategyModel = Field(default_factory=StrategyModel)
    env: Dict[str, Any] = Field(default_factory=dict)
    cache: Optional[CacheModel] = None
    steps: List[StepModel] = Field(min_length=1)

    def to_job(self, name: str) -> Job:
        needs = [self.needs] if isinstance(self.needs, str) else list(self.needs)
        return Job(
            name=name,
            steps=[s.to_step() for s in self.steps],
            needs=needs,
            condition=self.if_,
            matrix=dict(self.strategy.matrix),
            fail_fast=self.strategy.fail_fast,
            runs_on=self.runs_on,
            env={k: str(v) for k, v in self.env.items()},
            cache=self.cache.to_spec() if self.cache else None,
        )


class WorkflowModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    jobs: Dict[str, JobModel] = Field(min_length=1)

    def to_jobs(self) -> List[Job]:
        return [spec.to_job(name) for name, spec in self.jobs.items()]


def jobs_from_dicts(data: Mapping[str, Any]) -> List[Job]:
    """
    Convert an already-parsed workflow mapping into Jobs.

    Accepts either {"jobs": {name: job, ...}} or the bare jobs mapping.
    Job order follows mapping order.
    """
    if "jobs" not in data:
        data = {"jobs": dict(data)}
    try:
        return WorkflowModel.model_validate(data).to_jobs()
    except ValidationError as e:
        raise WorkflowError(f"Invalid workflow definition:\n{e}") from e


def step_to_dict(step: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": step.name}
    if step.run is not None:
        out["run"] = step.run
    else:
        out["uses"] = step.uses
        if step.with_:
            out["with"] = dict(step.with_)
    if step.id is not None:
        out["id"] = step.id
    if step.cwd is not None:
        out["working-directory"] = step.cwd
    if step.env:
        out["env"] = dict(step.env)
    if step.continue_on_error:
        out["continue-on-error"] = True
    if step.timeout is not None:
        out["timeout-minutes"] = step.timeout / 60
    if step.skip_on_cache_hit:
        out["skip-on-cache-hit"] = True
    return out


def job_to_dict(job: Job) -> Dict[str, Any]:
    """Reverse of JobModel.to_job(); the job name is the mapping key."""
    out: Dict[str, Any] = {
        "runs-on": job.runs_on,
        "steps": [step_to_dict(s) for s in job.steps],
    }
    if job.needs:
        out["needs"] = list(job.needs)
    if job.condition:
        out["if"] = job.condition
    if job.matrix or job.fail_fast:
        out["strategy"] = {"matrix": dict(job.matrix), "fail-fast": job.fail_fast}
    if job.env:
        out["env"] = dict(job.env)
    if job.cache is not None:
        out["cache"] = {
            "key": job.cache.key,
            "path": list(job.cache.paths),
            "hash-files": list(job.cache.hash_files),
            "restore-keys": list(job.cache.restore_keys),
        }
    return out


def workflow_to_dict(jobs: List[Job], name: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"jobs": {j.name: job_to_dict(j) for j in jobs}}
    if name:
        out["name"] = name
    return out


# ----------------------------------------------------------------------
# Static validation
# ----------------------------------------------------------------------

def validate_workflow(jobs: List[Job]) -> List[str]:
    """
    Problems that can be found without running anything: graph errors,
    unparseable conditions, cache templates with unknown inputs.
    An empty list means the workflow is valid.
    """
    problems: List[str] = []
    try:
        DependencyGraph.build(jobs)
    except WorkflowError as e:
        problems.append(str(e))

    for j in jobs:
        if j.condition:
            try:
                parse(j.condition)
            except ExpressionError as e:
                problems.append(f"job '{j.name}': {e}")

        if j.cache is not None:
            known = {"os", "job", "hash"} | {f"env.{k}" for k in j.env}
            try:
                combos = expand_matrix(j.matrix) if j.matrix else [()]
            except WorkflowError:
                combos = []
            for combo in combos:
                known |= {f"matrix.{k}" for k, _ in combo}
            templates = [j.cache.key, *j.cache.restore_keys]
            for t in templates:
                for name in CacheKeyResolver.placeholders(t):
                    if name not in known:
                        problems.append(
                            f"job '{j.name}': cache key {t!r} references unknown input {name!r}"
                        )
    return problems
