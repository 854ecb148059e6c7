from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from ciforge import JobBuilder, build, cache, job, matrix, sh, uses, wf
from ciforge.errors import WorkflowError
from ciforge.loader import jobs_from_dicts, load_workflow, validate_workflow, workflow_to_dict


WORKFLOW = {
    "name": "ci",
    "jobs": {
        "lint": {"steps": [{"run": "npm run lint"}]},
        "test": {
            "needs": "lint",
            "strategy": {"matrix": {"node": [18, 20]}, "fail-fast": True},
            "cache": {
                "key": "npm-{os}-{matrix.node}-{hash}",
                "path": "node_modules",
                "hash-files": ["package-lock.json"],
            },
            "steps": [
                {"name": "Install", "run": "npm ci", "skip-on-cache-hit": True},
                {"run": "npm test", "timeout-minutes": 10, "continue-on-error": True},
            ],
        },
        "build": {
            "needs": ["test"],
            "steps": [
                {"run": "npm run build", "working-directory": "web", "env": {"CI": 1}},
                {"uses": "actions/upload-artifact@v4", "with": {"name": "dist", "path": "web/dist"}},
            ],
        },
        "deploy": {
            "needs": "build",
            "if": "github.ref_name == 'main' && event == 'push'",
            "runs-on": "self-hosted",
            "steps": [{"id": "ship", "run": "./deploy.sh"}],
        },
    },
}


def test_jobs_from_dicts():
    jobs = jobs_from_dicts(WORKFLOW)
    assert [j.name for j in jobs] == ["lint", "test", "build", "deploy"]

    lint, test, build_job, deploy = jobs
    assert lint.steps[0].name == "Run npm run lint"
    assert test.needs == ["lint"]
    assert test.matrix == {"node": [18, 20]}
    assert test.fail_fast
    assert test.cache.paths == ["node_modules"]
    assert test.steps[0].skip_on_cache_hit
    assert test.steps[1].timeout == 600
    assert test.steps[1].continue_on_error
    assert build_job.steps[0].cwd == "web"
    assert build_job.steps[0].env == {"CI": "1"}
    assert build_job.steps[1].uses == "actions/upload-artifact@v4"
    assert build_job.steps[1].name == "actions/upload-artifact@v4"
    assert deploy.condition == "github.ref_name == 'main' && event == 'push'"
    assert deploy.runs_on == "self-hosted"
    assert deploy.steps[0].id == "ship"


def test_bare_jobs_mapping_is_accepted():
    jobs = jobs_from_dicts({"only": {"steps": [{"run": "true"}]}})
    assert [j.name for j in jobs] == ["only"]


def test_dict_form_survives_serialization():
    jobs = jobs_from_dicts(WORKFLOW)
    assert jobs_from_dicts(workflow_to_dict(jobs, name="ci")) == jobs


@pytest.mark.parametrize(
    "bad",
    [
        {"jobs": {}},
        {"jobs": {"a": {"steps": []}}},
        {"jobs": {"a": {"steps": [{"run": "x", "uses": "y"}]}}},
        {"jobs": {"a": {"steps": [{"name": "nothing"}]}}},
        {"jobs": {"a": {"steps": [{"run": "x"}], "bogus": 1}}},
        {"jobs": {"a": {"steps": [{"run": "x", "timeout-minutes": 0}]}}},
        {"jobs": {"a": {"strategy": {"matrix": {"node": 20}}, "steps": [{"run": "x"}]}}},
        {"jobs": {"a": {"strategy": {"matrix": {"node": "20"}}, "steps": [{"run": "x"}]}}},
    ],
)
def test_invalid_definitions_raise_workflow_error(bad):
    with pytest.raises(WorkflowError):
        jobs_from_dicts(bad)


def test_validate_reports_problems():
    jobs = [
        job("a", sh("a", "true"), needs="b"),
        job("b", sh("b", "true"), needs="a", if_="branch =="),
        job("c", sh("c", "true"), cache=cache("pip-{matrix.python}", ".venv")),
    ]
    problems = validate_workflow(jobs)
    assert any("Dependency cycle detected" in p for p in problems)
    assert any(p.startswith("job 'b'") for p in problems)
    assert any("'matrix.python'" in p for p in problems)


def test_validate_accepts_good_workflow():
    assert validate_workflow(jobs_from_dicts(WORKFLOW)) == []


def test_uses_keyword_inputs_become_dashed():
    s = uses("Upload", "upload-artifact", with_={"name": "dist"}, path="dist", retention_days=5)
    assert s.with_ == {"name": "dist", "path": "dist", "retention-days": 5}


def test_uses_accepts_a_name_input():
    s = uses("Upload", "upload-artifact", name="web", path="dist")
    assert s.name == "Upload"
    assert s.with_ == {"name": "web", "path": "dist"}


def test_package_exports_the_cache_helper():
    import ciforge

    assert callable(ciforge.cache)
    assert ciforge.cache("k-{os}", ".venv").key == "k-{os}"


def test_job_helper_applies_default_cwd():
    j = job("web", sh("a", "npm ci"), sh("b", "npm test", cwd="other"), cwd="web", needs="lint")
    assert [s.cwd for s in j.steps] == ["web", "other"]
    assert j.needs == ["lint"]


def test_job_without_steps_is_rejected():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("test")
        .depends_on("lint")
        .when("event == 'pull_request'")
        .with_matrix(node=[18, 20], fail_fast=True)
        .with_env(NODE_ENV="test", RETRIES=2)
        .on("macos-latest")
        .define_step("Test", "npm test")
        .use_action("Upload", "upload-artifact", path="coverage")
        .build()
    )
    assert isinstance(build("x"), JobBuilder)
    assert j.needs == ["lint"]
    assert j.condition == "event == 'pull_request'"
    assert j.matrix == {"node": [18, 20]}
    assert j.fail_fast
    assert j.env == {"NODE_ENV": "test", "RETRIES": "2"}
    assert j.runs_on == "macos-latest"
    assert [s.kind for s in j.steps] == ["run", "uses"]


def test_matrix_helper_and_wf_flattening():
    per_version = matrix("node", [18, 20]).jobs(lambda v: job(f"test-{v}", sh("t", "npm test")))
    jobs = wf(job("lint", sh("l", "npm run lint")), per_version)
    assert [j.name for j in jobs] == ["lint", "test-18", "test-20"]
    assert matrix("node", [18, 20]).as_dict() == {"node": [18, 20]}


def test_load_workflow_function(tmp_path):
    path = tmp_path / "ciforge_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from ciforge import job, sh, wf

            def workflow():
                return wf(
                    job("lint", sh("Lint", "npm run lint")),
                    job("test", sh("Test", "npm test"), needs="lint"),
                )
            """
        )
    )
    jobs = load_workflow(path)
    assert [j.name for j in jobs] == ["lint", "test"]


def test_bundled_example_workflow_loads_and_validates():
    path = Path(__file__).resolve().parents[1] / "ciforge_workflow.py"
    jobs = load_workflow(path)
    assert [j.name for j in jobs] == ["lint", "test", "build", "deploy", "notify-failure"]
    assert validate_workflow(jobs) == []

    upload = jobs[2].steps[-1]
    assert upload.name == "Upload bundle"
    assert upload.with_ == {"name": "web-build", "path": "build", "retention-days": 14}
    assert jobs[1].cache.key == "npm-{os}-{matrix.node}-{hash}"


def test_load_workflow_jobs_constant(tmp_path):
    path = tmp_path / "other_workflow.py"
    path.write_text("from ciforge import job, sh\nJOBS = [job('a', sh('a', 'true'))]\n")
    assert [j.name for j in load_workflow(path)] == ["a"]


def test_load_workflow_rejects_wrong_shape(tmp_path):
    path = tmp_path / "broken_workflow.py"
    path.write_text("JOBS = 'nope'\n")
    with pytest.raises(TypeError, match="List\\[Job\\]"):
        load_workflow(path)
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")
