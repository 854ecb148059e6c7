from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from ciforge import cli as cli_module
from ciforge.cli import cli

GOOD = """
from ciforge import job, sh, wf

def workflow():
    return wf(
        job("lint", sh("Lint", "echo linting")),
        job("test", sh("Test", "echo testing"), needs="lint"),
        job("deploy", sh("Deploy", "echo deploying"), needs="test", if_="branch == 'main'"),
    )
"""

FAILING = """
from ciforge import job, sh
JOBS = [job("broken", sh("Explode", "echo kaput; exit 4"))]
"""

CYCLIC = """
from ciforge import job, sh
JOBS = [job("a", sh("a", "true"), needs="b"), job("b", sh("b", "true"), needs="a")]
"""


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CIFORGE_CAPACITY", raising=False)
    return CliRunner()


def write(tmp_path, text, name="ciforge_workflow.py"):
    (tmp_path / name).write_text(text)
    return name


def test_run_success(runner, tmp_path):
    write(tmp_path, GOOD)
    result = runner.invoke(cli, ["run", "--branch", "main", "--sha", "abc", "--workers", "2"])
    assert result.exit_code == 0, result.output
    assert "RUN STATUS: SUCCESS" in result.output
    assert "deploy: SUCCEEDED" in result.output


def test_run_skips_gated_job_on_other_branch(runner, tmp_path):
    write(tmp_path, GOOD)
    result = runner.invoke(cli, ["run", "--branch", "feature/x", "--sha", "abc"])
    assert result.exit_code == 0, result.output
    assert "deploy: SKIPPED" in result.output


def test_run_failure_exits_non_zero(runner, tmp_path):
    name = write(tmp_path, FAILING, "broken_workflow.py")
    result = runner.invoke(cli, ["run", "--workflow", name, "--branch", "main", "--sha", "abc"])
    assert result.exit_code == 1
    assert "FAILED: broken" in result.output
    assert "kaput" in result.output


def test_run_rejects_cycle(runner, tmp_path):
    write(tmp_path, CYCLIC)
    result = runner.invoke(cli, ["run", "--branch", "main", "--sha", "abc"])
    assert result.exit_code == 1
    assert "Dependency cycle detected" in result.output


def test_missing_workflow(runner):
    result = runner.invoke(cli, ["run", "--workflow", "nope.py"])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_multiple_workflows_need_a_choice(runner, tmp_path):
    write(tmp_path, GOOD, "a_workflow.py")
    write(tmp_path, GOOD, "b_workflow.py")
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_plan_prints_stages(runner, tmp_path):
    write(tmp_path, GOOD)
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "Stage 1:" in result.output
    assert "Stage 3:" in result.output
    assert "deploy (needs: test) if: branch == 'main'" in result.output


def test_validate(runner, tmp_path):
    write(tmp_path, GOOD)
    ok = runner.invoke(cli, ["validate"])
    assert ok.exit_code == 0
    assert "OK (3 job(s))" in ok.output

    write(tmp_path, CYCLIC)
    bad = runner.invoke(cli, ["validate"])
    assert bad.exit_code == 1
    assert "Dependency cycle detected" in bad.output


def test_submit_posts_serialized_workflow(runner, tmp_path, monkeypatch):
    write(tmp_path, GOOD)
    sent = {}

    class FakeResponse:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def read(self):
            return json.dumps({"run_id": "run-123", "job_ids": []}).encode()

    def fake_urlopen(req):
        sent["url"] = req.full_url
        sent["body"] = json.loads(req.data.decode())
        return FakeResponse()

    monkeypatch.setattr(cli_module.urllib.request, "urlopen", fake_urlopen)
    result = runner.invoke(
        cli, ["submit", "--api", "http://ci.local:8000/", "--branch", "main", "--sha", "abc"]
    )
    assert result.exit_code == 0, result.output
    assert sent["url"] == "http://ci.local:8000/runs"
    assert sent["body"]["branch"] == "main"
    assert list(sent["body"]["workflow"]["jobs"]) == ["lint", "test", "deploy"]
    assert "Run ID: run-123" in result.output
