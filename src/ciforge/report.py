# report.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .model import JobResult, JobStatus


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# skip-by-condition never fails a run
PASSING_STATES = frozenset({JobStatus.SUCCEEDED, JobStatus.SKIPPED})


@dataclass(frozen=True)
class Failure:
    """What the report shows for a job that did not pass."""
    job_id: str
    status: JobStatus
    step: Optional[str]
    error: Optional[str]
    output: str


@dataclass(frozen=True)
class RunReport:
    results: Sequence[JobResult]

    @property
    def status(self) -> RunStatus:
        if all(r.status in PASSING_STATES for r in self.results):
            return RunStatus.SUCCESS
        return RunStatus.FAILURE

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def result(self, job_id: str) -> JobResult:
        for r in self.results:
            if r.job_id == job_id:
                return r
        raise KeyError(job_id)

    def statuses(self) -> Dict[str, JobStatus]:
        return {r.job_id: r.status for r in self.results}

    def failures(self) -> List[Failure]:
        out: List[Failure] = []
        for r in self.results:
            if r.status in PASSING_STATES:
                continue
            step = r.first_failed_step
            out.append(
                Failure(
                    job_id=r.job_id,
                    status=r.status,
                    step=step.name if step else None,
                    error=(step.error if step else None) or r.error,
                    output=step.output if step else "",
                )
            )
        return out

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form used by the control plane."""
        return {
            "status": self.status.value,
            "jobs": [
                {
                    "id": r.job_id,
                    "name": r.name,
                    "status": r.status.value,
                    "matrix": dict(r.matrix),
                    "outputs": dict(r.outputs),
                    "error": r.error,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "steps": [
                        {
                            "name": s.name,
                            "status": s.status.value,
                            "exit_code": s.exit_code,
                            "continued": s.continued,
                            "error": s.error,
                        }
                        for s in r.steps
                    ],
                }
                for r in self.results
            ],
            "failures": [
                {
                    "id": f.job_id,
                    "status": f.status.value,
                    "step": f.step,
                    "error": f.error,
                    "output": f.output,
                }
                for f in self.failures()
            ],
        }
