# runner.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from .actions import ActionRegistry, LocalArtifactStore
from .cache import LocalCacheStore
from .config import RunnerConfig
from .executor import RunExecutor
from .git_facts.git import current_branch, head_sha
from .model import EventType, Job, RunContext
from .report import RunReport
from .scheduler import JobScheduler
from .ui.console import get_console

# local dev ---> commit ---> ciforge run ---> push ---> control plane


def default_context(
    event: EventType | str = EventType.PUSH,
    branch: Optional[str] = None,
    sha: Optional[str] = None,
    repo_root: str | Path = ".",
) -> RunContext:
    """
    RunContext for a local run. Branch and SHA come from git unless given;
    outside a repository they fall back to "main" and "".
    """
    console = get_console()
    if branch is None:
        try:
            branch = current_branch(repo_root)
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("git branch unavailable, using 'main'")
            branch = "main"
    if sha is None:
        try:
            sha = head_sha(repo_root)
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("git HEAD unavailable, using empty sha")
            sha = ""
    return RunContext(event=event, branch=branch, sha=sha)


def build_executor(config: RunnerConfig, repo_root: str | Path = ".") -> RunExecutor:
    """Wire the local collaborators: shell, action registry, cache and artifact stores."""
    root = Path(repo_root).resolve()
    return RunExecutor(
        actions=ActionRegistry(artifacts=LocalArtifactStore(root / config.artifact_dir), workdir=root),
        cache_store=LocalCacheStore(root / config.cache_dir),
        workdir=root,
        default_timeout=config.step_timeout,
    )


def run_workflow(
    jobs: List[Job],
    *,
    context: Optional[RunContext] = None,
    config: Optional[RunnerConfig] = None,
    repo_root: str | Path = ".",
    executor: Optional[RunExecutor] = None,
) -> RunReport:
    """
    Build the graph, run every job and return the report.

    Configuration errors (WorkflowError, CycleError) propagate before any
    job starts. Job failures never raise; they are in the report.
    """
    config = config or RunnerConfig.from_env()
    context = context or default_context(repo_root=repo_root)
    executor = executor or build_executor(config, repo_root)

    scheduler = JobScheduler.from_jobs(jobs, context, executor, config)
    report = scheduler.run()

    if isinstance(executor.cache_store, LocalCacheStore):
        executor.cache_store.prune(keep=config.cache_keep)
    artifacts = getattr(executor.actions, "artifacts", None)
    if isinstance(artifacts, LocalArtifactStore):
        artifacts.purge_expired()
    return report
