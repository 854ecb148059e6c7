from .runner import run_workflow
from .model import Job, Step, CacheSpec, EventType, JobStatus, RunContext, SkipPolicy
from .report import RunReport, RunStatus

# last: importing the ciforge.cache submodule rebinds `cache` on the package
from .dsl import job, sh, uses, cache, matrix, wf, workflow, JobBuilder, build

__all__ = [
    "job",
    "sh",
    "uses",
    "cache",
    "matrix",
    "wf",
    "workflow",
    "JobBuilder",
    "build",
    "run_workflow",
    "Job",
    "Step",
    "CacheSpec",
    "EventType",
    "JobStatus",
    "RunContext",
    "SkipPolicy",
    "RunReport",
    "RunStatus",
]
