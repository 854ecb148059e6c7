# executor.py
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actions import OUTPUT_TAIL, ActionInvoker, ActionRegistry, CacheStorage, ShellRunner
from .cache import CacheKeyResolver, ResolvedKey, cache_inputs
from .errors import CancellationSignal, CIError, StepExecutionError, StepTimeoutError
from .model import (
    CacheEntry,
    Job,
    JobInstance,
    JobResult,
    JobStatus,
    RunContext,
    Step,
    StepOutcome,
    StepStatus,
)
from .ui.console import get_console

RESTORE_STEP = "Restore cache"
SAVE_STEP = "Save cache"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def call_with_timeout(fn: Callable[..., Any], timeout: float | None, *args, **kwargs) -> Any:
    """
    Run fn under a timeout. The worker thread is abandoned, not killed, when
    the timeout fires; callers treat that as a failed step.
    """
    if timeout is None:
        return fn(*args, **kwargs)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ciforge-call")
    try:
        fut = pool.submit(fn, *args, **kwargs)
        try:
            return fut.result(timeout=timeout)
        except FuturesTimeout:
            fut.cancel()
            raise TimeoutError(f"call did not finish within {timeout:g}s") from None
    finally:
        pool.shutdown(wait=False)


class RunExecutor:
    """
    Executes one job instance: steps strictly in declared order on a single
    runner, honouring continue_on_error, timeouts and cooperative cancellation.
    """

    def __init__(
        self,
        shell: Optional[ShellRunner] = None,
        actions: Optional[ActionInvoker] = None,
        cache_store: Optional[CacheStorage] = None,
        *,
        workdir: str | Path = ".",
        default_timeout: float | None = None,
        resolver: Optional[CacheKeyResolver] = None,
    ):
        self.workdir = Path(workdir).resolve()
        self.shell = shell or ShellRunner()
        self.actions = actions or ActionRegistry(workdir=self.workdir)
        self.cache_store = cache_store
        self.default_timeout = default_timeout
        self.resolver = resolver or CacheKeyResolver()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        job: Job | JobInstance,
        context: RunContext,
        cancel: Optional[threading.Event] = None,
    ) -> JobResult:
        """Execute and append the result to the context."""
        result = self.execute(job, context, cancel)
        context.record(result)
        return result

    def execute(
        self,
        job: Job | JobInstance,
        context: RunContext,
        cancel: Optional[threading.Event] = None,
    ) -> JobResult:
        """Execute without touching the context's result mapping."""
        instance = job if isinstance(job, JobInstance) else JobInstance(job=job)
        cancel = cancel or threading.Event()
        console = get_console()
        console.print_job_start(instance.id)

        started = now_utc()
        outcomes: List[StepOutcome] = []
        outputs: Dict[str, str] = {}
        status = JobStatus.SUCCEEDED
        error: str | None = None

        resolved: Optional[ResolvedKey] = None
        exact_hit = False
        if instance.job.cache is not None and self.cache_store is not None:
            outcome, resolved, exact_hit = self._restore_cache(instance)
            outcomes.append(outcome)
            outputs.update(outcome.outputs)
            if outcome.failed and not outcome.continued:
                status, error = JobStatus.FAILED, outcome.error

        steps = instance.job.steps
        position = 0
        try:
            for position, step in enumerate(steps):
                if status is JobStatus.FAILED:
                    outcomes.append(StepOutcome(name=step.name, status=StepStatus.SKIPPED))
                    continue
                if cancel.is_set():
                    raise CancellationSignal(instance.id, step.name)
                if exact_hit and step.skip_on_cache_hit:
                    console.print_cache(instance.id, f"skip '{step.name}' (exact hit)")
                    outcomes.append(StepOutcome(name=step.name, status=StepStatus.SKIPPED, error="cache hit"))
                    continue

                console.print_step(instance.id, step.name)
                outcome = self._run_step(instance, step, context)
                outcomes.append(outcome)
                outputs.update(outcome.outputs)

                if outcome.failed:
                    console.print_step_failed(instance.id, outcome)
                    if not outcome.continued:
                        status, error = JobStatus.FAILED, outcome.error
        except CancellationSignal as sig:
            status, error = JobStatus.CANCELLED, str(sig)
            outcomes.extend(StepOutcome(name=s.name, status=StepStatus.CANCELLED) for s in steps[position:])

        # a cancel that lands during the last step still cancels the job
        if status is not JobStatus.FAILED and cancel.is_set():
            status = JobStatus.CANCELLED
            error = error or f"[{instance.id}] cancelled"

        if (
            status is JobStatus.SUCCEEDED
            and resolved is not None
            and not exact_hit
            and instance.job.cache.paths
        ):
            outcomes.append(self._save_cache(instance, resolved))

        result = JobResult(
            job_id=instance.id,
            name=instance.name,
            status=status,
            steps=tuple(outcomes),
            outputs=outputs,
            matrix=instance.matrix_values,
            started_at=started,
            finished_at=now_utc(),
            error=error,
        )
        console.print_job_finished(result)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _timeout_for(self, step: Step) -> float | None:
        return step.timeout if step.timeout is not None else self.default_timeout

    def _run_step(self, instance: JobInstance, step: Step, context: RunContext) -> StepOutcome:
        timeout = self._timeout_for(step)
        t0 = time.monotonic()
        try:
            if step.run is not None:
                res = self.shell.run(instance, step, context, self.workdir, timeout)
                return StepOutcome(
                    name=step.name,
                    status=StepStatus.SUCCESS,
                    exit_code=res.exit_code,
                    output=res.output,
                    outputs=res.outputs,
                    duration=time.monotonic() - t0,
                )

            try:
                res = call_with_timeout(self.actions.invoke, timeout, step.uses, dict(step.with_), context)
            except TimeoutError as e:
                raise StepTimeoutError(
                    job=instance.id,
                    step=step.name,
                    message="timed out",
                    timeout=float(timeout or 0),
                ) from e
            if not res.success:
                raise StepExecutionError(
                    job=instance.id,
                    step=step.name,
                    message=res.error or f"action {step.uses} failed",
                    output=res.output[-OUTPUT_TAIL:],
                )
            return StepOutcome(
                name=step.name,
                status=StepStatus.SUCCESS,
                output=res.output[-OUTPUT_TAIL:],
                outputs=res.outputs,
                duration=time.monotonic() - t0,
            )
        except StepExecutionError as e:
            return StepOutcome(
                name=step.name,
                status=StepStatus.FAILURE,
                exit_code=e.exit_code,
                output=e.output,
                error=str(e),
                continued=step.continue_on_error,
                duration=time.monotonic() - t0,
            )
        except Exception as e:
            # action bodies are user code: any exception fails the step, never the scheduler
            return StepOutcome(
                name=step.name,
                status=StepStatus.FAILURE,
                error=f"{type(e).__name__}: {e}",
                continued=step.continue_on_error,
                duration=time.monotonic() - t0,
            )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _restore_cache(self, instance: JobInstance) -> Tuple[StepOutcome, Optional[ResolvedKey], bool]:
        spec = instance.job.cache
        console = get_console()
        t0 = time.monotonic()
        try:
            resolved = self.resolver.resolve(
                spec.key,
                cache_inputs(instance, self.workdir),
                spec.restore_keys or None,
            )
        except CIError as e:
            return (
                StepOutcome(name=RESTORE_STEP, status=StepStatus.FAILURE, error=str(e)),
                None,
                False,
            )

        try:
            entry: Optional[CacheEntry] = call_with_timeout(
                self.cache_store.get, self.default_timeout, resolved.key, resolved.restore_keys
            )
            if entry is not None:
                call_with_timeout(self.cache_store.restore, self.default_timeout, entry, self.workdir)
        except Exception as e:
            console.print_cache(instance.id, f"lookup failed: {e}")
            return (
                StepOutcome(
                    name=RESTORE_STEP,
                    status=StepStatus.FAILURE,
                    error=f"cache lookup failed: {type(e).__name__}: {e}",
                    continued=True,
                    outputs={"cache-hit": "false"},
                    duration=time.monotonic() - t0,
                ),
                resolved,
                False,
            )

        exact = entry is not None and entry.key == resolved.key
        if entry is None:
            message = f"miss ({resolved.key})"
        elif exact:
            message = f"hit ({entry.key})"
        else:
            message = f"partial hit ({entry.key})"
        console.print_cache(instance.id, message)

        outputs = {"cache-hit": "true" if exact else "false"}
        if entry is not None:
            outputs["cache-matched-key"] = entry.key
        return (
            StepOutcome(
                name=RESTORE_STEP,
                status=StepStatus.SUCCESS,
                output=message,
                outputs=outputs,
                duration=time.monotonic() - t0,
            ),
            resolved,
            exact,
        )

    def _save_cache(self, instance: JobInstance, resolved: ResolvedKey) -> StepOutcome:
        t0 = time.monotonic()
        try:
            call_with_timeout(
                self.cache_store.put, self.default_timeout, resolved.key, instance.job.cache.paths, self.workdir
            )
        except Exception as e:
            return StepOutcome(
                name=SAVE_STEP,
                status=StepStatus.FAILURE,
                error=f"cache save failed: {type(e).__name__}: {e}",
                continued=True,
                duration=time.monotonic() - t0,
            )
        get_console().print_cache(instance.id, f"saved ({resolved.key})")
        return StepOutcome(
            name=SAVE_STEP,
            status=StepStatus.SUCCESS,
            output=f"saved {resolved.key}",
            duration=time.monotonic() - t0,
        )
