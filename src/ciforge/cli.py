from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from ciforge.config import RunnerConfig
from ciforge.dag import DependencyGraph
from ciforge.errors import WorkflowError
from ciforge.git_facts.git import get_remote_url, is_dirty
from ciforge.loader import load_workflow, validate_workflow, workflow_to_dict
from ciforge.model import EventType, SkipPolicy
from ciforge.runner import default_context, run_workflow
from ciforge.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "ciforge_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciforge run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  ciforge run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  ciforge run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_or_exit(ctx, workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _warn_if_dirty() -> None:
    try:
        if is_dirty():
            get_console().print_info("Note: working tree has uncommitted changes")
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_debug("not a git checkout, skipping dirty-tree check")


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


event_option = click.option(
    "--event",
    type=click.Choice([e.value for e in EventType]),
    default=EventType.PUSH.value,
    show_default=True,
    help="Event that triggered the run",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final report and errors")
@click.pass_context
def cli(ctx, debug, quiet):
    """ciforge: dependency-aware CI job runner."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Runner capacity (parallel jobs)")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel the whole run on the first job failure")
@click.option(
    "--skip-policy",
    type=click.Choice([p.value for p in SkipPolicy]),
    default=None,
    help="Whether a skipped dependency blocks (strict) or satisfies (permissive) its dependents",
)
@click.option("--timeout", default=None, type=float, help="Default per-step timeout in seconds")
@event_option
@click.option("--branch", default=None, help="Branch name (defaults to the checked-out branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, fail_fast, skip_policy, timeout, event, branch, sha):
    """Run a ciforge workflow."""
    console = get_console()
    workflow_path, jobs = _load_or_exit(ctx, workflow)

    try:
        config = RunnerConfig.from_env().with_overrides(
            capacity=workers,
            cache_dir=cache_dir,
            fail_fast=fail_fast,
            skip_policy=skip_policy,
            step_timeout=timeout,
        )
        context = default_context(event=event, branch=branch, sha=sha)

        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            job_count=len(jobs),
            context=context,
        )
        _warn_if_dirty()
        report = run_workflow(jobs, context=context, config=config)
        console.print_report(report)

        if not report.ok:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def plan(ctx, workflow):
    """Show the stages a workflow would run in."""
    console = get_console()
    _path, jobs = _load_or_exit(ctx, workflow)
    try:
        graph = DependencyGraph.build(jobs)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_plan(graph)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow without running it."""
    console = get_console()
    workflow_path, jobs = _load_or_exit(ctx, workflow)
    problems = validate_workflow(jobs)
    if problems:
        console.print_error(
            "Invalid workflow",
            f"{workflow_path.name} has {len(problems)} problem(s):",
            details=problems,
        )
        sys.exit(1)
    console.print_info(f"{workflow_path.name}: OK ({len(jobs)} job(s))")


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_option
@click.option("--branch", default=None, help="Branch name (defaults to the checked-out branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.pass_context
def submit(ctx, api, workflow, event, branch, sha):
    """Submit a workflow run to the control plane API."""
    console = get_console()
    workflow_path, jobs = _load_or_exit(ctx, workflow)
    console.print_info(f"Loaded {len(jobs)} job(s) from {workflow_path}")

    context = default_context(event=event, branch=branch, sha=sha)
    request_data = {
        "event": context.event.value,
        "branch": context.branch,
        "sha": context.sha,
        "workflow": workflow_to_dict(jobs, name=workflow_path.stem),
    }

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req = urllib.request.Request(
        url,
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error(
            "Invalid API response",
            "Could not parse JSON response from API.",
            details=[str(e)],
        )
        sys.exit(1)

    run_id = result.get("run_id")
    if not run_id:
        console.print_error("Empty API response", f"No run_id in response from {base_url}")
        sys.exit(1)
    console.print_info(f"\nSubmitted run to {base_url}")
    console.print_info(f"  Run ID: {run_id}")
    console.print_info(f"  Poll:   {base_url}/runs/{run_id}")


if __name__ == "__main__":
    cli()
