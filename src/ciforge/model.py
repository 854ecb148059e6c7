# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    RELEASE = "release"


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class SkipPolicy(str, Enum):
    """How a `skipped` dependency counts for its dependents' `success()`."""
    STRICT = "strict"          # skipped dependency => dependents skip too
    PERMISSIVE = "permissive"  # skipped dependency counts as satisfied


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CacheSpec:
    """
    Dependency cache declaration for a job.

    key:           template such as "npm-{os}-{matrix.node}-{hash}"
    restore_keys:  explicit restore templates; derived from `key` when empty
    paths:         files/dirs saved on a miss and restored on a hit
    hash_files:    globs whose contents feed the `{hash}` input (lockfiles)
    """
    key: str
    paths: List[str] = field(default_factory=list)
    hash_files: List[str] = field(default_factory=list)
    restore_keys: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job: a shell command or an action."""
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: float | None = None
    skip_on_cache_hit: bool = False

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} needs exactly one of run= or uses=")

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else "uses"


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps, `needs` edges, an optional `if` condition and an
    optional matrix that expands it into sibling instances.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    condition: str | None = None
    matrix: Dict[str, Any] = field(default_factory=dict)
    fail_fast: bool = False
    runs_on: str = "ubuntu-latest"
    env: Dict[str, str] = field(default_factory=dict)
    cache: CacheSpec | None = None

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"job {self.name!r} must have at least one step")


@dataclass(frozen=True)
class JobInstance:
    """One node of the run graph: a job plus one matrix combination."""
    job: Job
    matrix: Tuple[Tuple[str, Any], ...] = ()
    index: int = 0

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def id(self) -> str:
        if not self.matrix:
            return self.job.name
        binding = ",".join(f"{k}={v}" for k, v in self.matrix)
        return f"{self.job.name}[{binding}]"

    @property
    def matrix_values(self) -> Dict[str, Any]:
        return dict(self.matrix)


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    continued: bool = False  # failure tolerated by continue_on_error
    outputs: Mapping[str, str] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status is StepStatus.FAILURE


@dataclass(frozen=True)
class JobResult:
    job_id: str
    name: str
    status: JobStatus
    steps: Tuple[StepOutcome, ...] = ()
    outputs: Mapping[str, str] = field(default_factory=dict)
    matrix: Mapping[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def first_failed_step(self) -> Optional[StepOutcome]:
        for s in self.steps:
            if s.failed and not s.continued:
                return s
        return None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class CacheEntry:
    """A stored cache payload. `payload` is opaque to the core."""
    key: str
    restore_keys: Tuple[str, ...] = ()
    payload: Any = None


class RunContext:
    """
    Per-run state passed explicitly through every call.

    The event/branch/sha facts are fixed at construction. Job results are
    append-only: each instance id is recorded exactly once.
    """

    def __init__(
        self,
        event: EventType | str = EventType.PUSH,
        branch: str = "main",
        sha: str = "",
        env: Optional[Mapping[str, str]] = None,
    ):
        self.event = EventType(event)
        self.branch = branch
        self.sha = sha
        self.env: Mapping[str, str] = MappingProxyType(dict(env or {}))
        self._results: Dict[str, JobResult] = {}
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    def __repr__(self) -> str:
        return f"RunContext(event={self.event.value!r}, branch={self.branch!r}, sha={self.sha[:12]!r})"

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def mark_cancelled(self) -> None:
        self._cancelled.set()

    def record(self, result: JobResult) -> None:
        with self._lock:
            if result.job_id in self._results:
                raise ValueError(f"result for {result.job_id!r} already recorded")
            self._results[result.job_id] = result

    def result(self, job_id: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(job_id)

    @property
    def results(self) -> Mapping[str, JobResult]:
        with self._lock:
            return MappingProxyType(dict(self._results))

    def results_for(self, job_name: str) -> List[JobResult]:
        """All recorded results of a job's instances (one per matrix combination)."""
        with self._lock:
            return [r for r in self._results.values() if r.name == job_name]
