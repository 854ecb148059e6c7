# scheduler.py
from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .conditions import ConditionEvaluator
from .config import RunnerConfig
from .dag import DependencyGraph
from .errors import ExpressionError
from .executor import RunExecutor, now_utc
from .model import Job, JobInstance, JobResult, JobStatus, RunContext, SkipPolicy
from .report import RunReport
from .ui.console import get_console

# Per-instance state machine:
#
#   pending -> blocked -> runnable -> running -> succeeded | failed | cancelled
#       \          \-----------------------------> skipped | failed | cancelled
#        \---------------------------------------> (same, when there are no deps)
#
# blocked:   some dependency is not terminal yet
# runnable:  dependencies terminal and the effective condition is true
# skipped:   condition false (a failed dependency makes the default success() false)
# failed:    the job failed, or its condition raised ExpressionError

_ALLOWED = {
    JobStatus.PENDING: {
        JobStatus.BLOCKED,
        JobStatus.RUNNABLE,
        JobStatus.SKIPPED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.BLOCKED: {
        JobStatus.RUNNABLE,
        JobStatus.SKIPPED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.RUNNABLE: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


@dataclass(frozen=True)
class Transition:
    seq: int
    job_id: str
    source: JobStatus
    target: JobStatus


class JobScheduler:
    """
    Drives every job instance of a run from `pending` to a terminal state.

    The state table, the transition history and result commits into the
    RunContext are guarded by one lock. An instance leaves `runnable` under
    that lock before it is handed to the pool, so it executes at most once.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        context: RunContext,
        executor: Optional[RunExecutor] = None,
        *,
        capacity: int = 1,
        fail_fast: bool = False,
        skip_policy: SkipPolicy | str = SkipPolicy.STRICT,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.graph = graph
        self.context = context
        self.executor = executor or RunExecutor()
        self.capacity = capacity
        self.fail_fast = fail_fast
        self.evaluator = evaluator or ConditionEvaluator(skip_policy)

        self._lock = threading.Lock()
        self._state: Dict[str, JobStatus] = {i.id: JobStatus.PENDING for i in graph.instances}
        self._cancel: Dict[str, threading.Event] = {i.id: threading.Event() for i in graph.instances}
        self._aborted = False
        self.transitions: List[Transition] = []

    @classmethod
    def from_jobs(
        cls,
        jobs: Iterable[Job],
        context: RunContext,
        executor: Optional[RunExecutor] = None,
        config: Optional[RunnerConfig] = None,
    ) -> "JobScheduler":
        """Build the graph (raising WorkflowError/CycleError before anything runs)."""
        config = config or RunnerConfig()
        return cls(
            DependencyGraph.build(jobs),
            context,
            executor,
            capacity=config.capacity,
            fail_fast=config.fail_fast,
            skip_policy=config.skip_policy,
        )

    # ------------------------------------------------------------------
    # State table
    # ------------------------------------------------------------------

    def state(self, job_id: str) -> JobStatus:
        with self._lock:
            return self._state[job_id]

    def states(self) -> Dict[str, JobStatus]:
        with self._lock:
            return dict(self._state)

    def _transition(self, job_id: str, target: JobStatus) -> None:
        # caller holds self._lock
        source = self._state[job_id]
        if source == target:
            return
        if target not in _ALLOWED.get(source, set()):
            raise RuntimeError(f"illegal transition for {job_id}: {source.value} -> {target.value}")
        self._state[job_id] = target
        self.transitions.append(Transition(len(self.transitions), job_id, source, target))

    def _finish_without_running(self, inst: JobInstance, status: JobStatus, reason: str) -> None:
        # caller holds self._lock
        self._transition(inst.id, status)
        now = now_utc()
        self.context.record(
            JobResult(
                job_id=inst.id,
                name=inst.name,
                status=status,
                matrix=inst.matrix_values,
                started_at=now,
                finished_at=now,
                error=reason,
            )
        )
        console = get_console()
        if status is JobStatus.SKIPPED:
            console.print_job_skipped(inst.id, reason)
        elif status is JobStatus.CANCELLED:
            console.print_job_cancelled(inst.id, reason)
        else:
            console.print_error(f"Job {inst.id} failed", reason)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _evaluate_waiting(self) -> None:
        """Move pending/blocked instances forward until nothing changes."""
        changed = True
        while changed:
            changed = False
            for inst in self.graph.instances:
                if self._state[inst.id] not in (JobStatus.PENDING, JobStatus.BLOCKED):
                    continue
                deps = self.graph.dependencies(inst.id)
                if any(not self._state[d].terminal for d in deps):
                    self._transition(inst.id, JobStatus.BLOCKED)
                    continue

                try:
                    run_it = self.evaluator.evaluate(inst.job.condition, self.context, inst)
                except ExpressionError as e:
                    self._finish_without_running(inst, JobStatus.FAILED, str(e))
                    if self.fail_fast:
                        self._abort(f"fail-fast: {inst.id} failed")
                    changed = True
                    continue

                if run_it:
                    self._transition(inst.id, JobStatus.RUNNABLE)
                else:
                    reason = f"if: {inst.job.condition}" if inst.job.condition else "a dependency did not succeed"
                    self._finish_without_running(inst, JobStatus.SKIPPED, reason)
                    changed = True

    def schedule_pass(self) -> List[JobInstance]:
        """
        One scheduling pass: re-evaluate waiting instances, then claim up to
        `capacity - running` runnable ones in declaration order. Claimed
        instances are already `running` when this returns.
        """
        with self._lock:
            if self._aborted:
                return []
            self._evaluate_waiting()
            running = sum(1 for s in self._state.values() if s is JobStatus.RUNNING)
            free = self.capacity - running
            if free <= 0:
                return []
            runnable = [i for i in self.graph.instances if self._state[i.id] is JobStatus.RUNNABLE]
            claimed = runnable[:free]
            for inst in claimed:
                self._transition(inst.id, JobStatus.RUNNING)
            return claimed

    def ready_jobs(self) -> List[str]:
        """Instance ids currently runnable (declaration order)."""
        with self._lock:
            return [i.id for i in self.graph.instances if self._state[i.id] is JobStatus.RUNNABLE]

    def _execute(self, inst: JobInstance) -> JobResult:
        return self.executor.execute(inst, self.context, self._cancel[inst.id])

    def complete(self, job_id: str, result: JobResult) -> None:
        """Commit a finished instance: state table and RunContext, atomically."""
        with self._lock:
            if self._state[job_id] is not JobStatus.RUNNING:
                raise RuntimeError(f"{job_id} completed while {self._state[job_id].value}")
            self._transition(job_id, result.status)
            self.context.record(result)

            if result.status is JobStatus.FAILED:
                inst = self.graph.instance(job_id)
                if inst.job.fail_fast:
                    for sib in self.graph.siblings(job_id):
                        self._cancel_instance(sib, f"fail-fast: {job_id} failed")
                if self.fail_fast:
                    self._abort(f"fail-fast: {job_id} failed")

    def _cancel_instance(self, job_id: str, reason: str) -> None:
        # caller holds self._lock
        state = self._state[job_id]
        if state is JobStatus.RUNNING:
            # stops at the next step boundary; the result arrives via complete()
            self._cancel[job_id].set()
        elif not state.terminal:
            self._finish_without_running(self.graph.instance(job_id), JobStatus.CANCELLED, reason)

    def _abort(self, reason: str) -> None:
        # caller holds self._lock
        self._aborted = True
        self.context.mark_cancelled()
        for inst in self.graph.instances:
            self._cancel_instance(inst.id, reason)

    def cancel(self, reason: str = "run cancelled") -> None:
        """External abort. Safe to call from any thread."""
        with self._lock:
            self._abort(reason)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="ciforge-job") as pool:
            while True:
                for inst in self.schedule_pass():
                    in_flight[pool.submit(self._execute, inst)] = inst.id

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    # running jobs stop at their next step boundary before the pool joins
                    self.cancel("interrupted by user")
                    raise
                for fut in done:
                    job_id = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        inst = self.graph.instance(job_id)
                        result = JobResult(
                            job_id=job_id,
                            name=inst.name,
                            status=JobStatus.FAILED,
                            matrix=inst.matrix_values,
                            finished_at=now_utc(),
                            error=f"{type(e).__name__}: {e}",
                        )
                    self.complete(job_id, result)

        with self._lock:
            leftover = [i for i in self.graph.instances if not self._state[i.id].terminal]
            for inst in leftover:
                self._finish_without_running(inst, JobStatus.CANCELLED, "never became runnable")

        return self.report()

    def report(self) -> RunReport:
        results = []
        for inst in self.graph.instances:
            r = self.context.result(inst.id)
            if r is not None:
                results.append(r)
        return RunReport(results=results)
