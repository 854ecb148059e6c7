from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from ciforge import cache, job, sh, uses
from ciforge.cache import LocalCacheStore
from ciforge.executor import RESTORE_STEP, SAVE_STEP, RunExecutor
from ciforge.model import JobStatus, StepStatus
from ciforge.report import RunReport


def test_steps_run_in_order(executor, registry, context):
    seen = []
    registry.register("record", lambda inputs, ctx: seen.append(inputs["n"]))
    j = job("build", *(uses(f"s{i}", "record", n=i) for i in range(4)))
    res = executor.execute(j, context)
    assert res.status is JobStatus.SUCCEEDED
    assert seen == [0, 1, 2, 3]
    assert [s.status for s in res.steps] == [StepStatus.SUCCESS] * 4


def test_continue_on_error_keeps_job_green(executor, context):
    j = job(
        "lint",
        sh("ok", "true"),
        sh("flaky", "exit 1", continue_on_error=True),
        sh("after", "true"),
    )
    res = executor.execute(j, context)
    assert res.status is JobStatus.SUCCEEDED
    flaky = res.steps[1]
    assert flaky.status is StepStatus.FAILURE
    assert flaky.continued
    assert flaky.exit_code == 1
    assert res.steps[2].status is StepStatus.SUCCESS
    assert res.first_failed_step is None


def test_failed_step_skips_the_rest(executor, context):
    j = job("test", sh("boom", "echo broken >&2; exit 3"), sh("never", "true"))
    res = executor.execute(j, context)
    assert res.status is JobStatus.FAILED
    assert res.steps[0].exit_code == 3
    assert "broken" in res.steps[0].output
    assert res.steps[1].status is StepStatus.SKIPPED

    failure = RunReport([res]).failures()[0]
    assert failure.step == "boom"
    assert "exited with 3" in failure.error


def test_missing_tool_gets_a_hint(executor, context):
    res = executor.execute(job("x", sh("npm", "npm ci", env={"PATH": "/nonexistent"})), context)
    assert res.status is JobStatus.FAILED
    assert "hint=Install Node.js" in res.steps[0].error


def test_shell_timeout(executor, context):
    res = executor.execute(job("slow", sh("sleep", "sleep 5", timeout=0.2)), context)
    assert res.status is JobStatus.FAILED
    assert "timed out" in res.steps[0].error


def _alive(pid):
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs /proc")
def test_shell_timeout_kills_background_children(executor, tmp_path, context):
    res = executor.execute(job("slow", sh("bg", "sleep 30 & echo $! > bg.pid; wait", timeout=0.5)), context)
    assert res.status is JobStatus.FAILED
    pid = int((tmp_path / "bg.pid").read_text())
    deadline = time.monotonic() + 3
    while _alive(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _alive(pid)


def test_action_timeout(executor, registry, context):
    registry.register("hang", lambda inputs, ctx: time.sleep(1))
    res = executor.execute(job("slow", uses("hang", "hang", timeout=0.05)), context)
    assert res.status is JobStatus.FAILED
    assert "timed out after 0.05s" in res.steps[0].error


def test_default_timeout_applies(registry, tmp_path, context):
    registry.register("hang", lambda inputs, ctx: time.sleep(1))
    ex = RunExecutor(actions=registry, workdir=tmp_path, default_timeout=0.05)
    assert ex.execute(job("slow", uses("hang", "hang")), context).status is JobStatus.FAILED


def test_action_exception_fails_step(executor, registry, context):
    def explode(inputs, ctx):
        raise RuntimeError("kaboom")

    registry.register("explode", explode)
    res = executor.execute(job("x", uses("go", "explode")), context)
    assert res.status is JobStatus.FAILED
    assert res.steps[0].error == "RuntimeError: kaboom"


def test_unknown_action_fails_step(executor, context):
    res = executor.execute(job("x", uses("go", "acme/missing@v1")), context)
    assert res.status is JobStatus.FAILED
    assert "Unknown action 'acme/missing@v1'" in res.steps[0].error


def test_step_outputs_become_job_outputs(executor, registry, context):
    registry.register("version", lambda inputs, ctx: {"version": "2.0.0"})
    j = job(
        "build",
        sh("sha", 'echo "short=$(echo $CIFORGE_SHA | cut -c1-7)" >> "$CIFORGE_OUTPUT"'),
        uses("ver", "org/version@v2"),
    )
    res = executor.execute(j, context)
    assert res.status is JobStatus.SUCCEEDED
    assert res.outputs == {"short": "0123456", "version": "2.0.0"}


def test_pre_cancelled_job_runs_nothing(executor, context):
    cancel = threading.Event()
    cancel.set()
    res = executor.execute(job("x", sh("a", "true"), sh("b", "true")), context, cancel)
    assert res.status is JobStatus.CANCELLED
    assert [s.status for s in res.steps] == [StepStatus.CANCELLED, StepStatus.CANCELLED]
    assert res.error == "[x] cancelled before step 'a'"


def test_cancel_stops_at_step_boundary(executor, registry, context):
    cancel = threading.Event()
    registry.register("stop", lambda inputs, ctx: cancel.set())
    res = executor.execute(job("x", uses("first", "stop"), sh("second", "true")), context, cancel)
    assert res.status is JobStatus.CANCELLED
    assert res.steps[0].status is StepStatus.SUCCESS
    assert res.steps[1].status is StepStatus.CANCELLED


def test_cancel_during_last_step_still_cancels(executor, registry, context):
    cancel = threading.Event()
    registry.register("stop", lambda inputs, ctx: cancel.set())
    res = executor.execute(job("x", uses("only", "stop")), context, cancel)
    assert res.status is JobStatus.CANCELLED


def test_run_records_result_once(executor, context):
    j = job("x", sh("a", "true"))
    executor.run(j, context)
    assert context.result("x").status is JobStatus.SUCCEEDED
    with pytest.raises(ValueError, match="already recorded"):
        executor.run(j, context)


def test_upload_artifact(executor, tmp_path, context):
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "app.js").write_text("bundle")
    res = executor.execute(
        job("build", uses("Upload", "actions/upload-artifact@v4", name="web", path="dist", retention_days=7)),
        context,
    )
    assert res.status is JobStatus.SUCCEEDED
    stored = tmp_path / "artifacts" / "web"
    assert (stored / "dist" / "app.js").read_text() == "bundle"
    assert (stored / ".retention.json").exists()


class TestDependencyCache:
    @pytest.fixture
    def cached_job(self, tmp_path):
        (tmp_path / "package-lock.json").write_text('{"lockfileVersion": 3}')
        return job(
            "install",
            sh("Install", "mkdir -p node_modules && echo ok > node_modules/marker", skip_on_cache_hit=True),
            sh("Use", "test -f node_modules/marker"),
            cache=cache("npm-{os}-{hash}", "node_modules", hash_files=["package-lock.json"]),
        )

    @pytest.fixture
    def cached_executor(self, tmp_path, registry):
        return RunExecutor(actions=registry, cache_store=LocalCacheStore(tmp_path / ".cache"), workdir=tmp_path)

    def test_miss_then_exact_hit(self, cached_executor, cached_job, tmp_path, context):
        first = cached_executor.execute(cached_job, context)
        assert first.status is JobStatus.SUCCEEDED
        assert first.steps[0].name == RESTORE_STEP
        assert first.outputs["cache-hit"] == "false"
        assert first.steps[-1].name == SAVE_STEP
        assert first.steps[-1].status is StepStatus.SUCCESS

        (tmp_path / "node_modules" / "marker").unlink()

        second = cached_executor.execute(cached_job, context)
        assert second.status is JobStatus.SUCCEEDED
        assert second.outputs["cache-hit"] == "true"
        install = next(s for s in second.steps if s.name == "Install")
        assert install.status is StepStatus.SKIPPED
        assert (tmp_path / "node_modules" / "marker").exists()
        assert second.steps[-1].name != SAVE_STEP

    def test_lockfile_change_is_a_partial_hit(self, cached_executor, cached_job, tmp_path, context):
        cached_executor.execute(cached_job, context)
        (tmp_path / "package-lock.json").write_text('{"lockfileVersion": 3, "changed": true}')

        res = cached_executor.execute(cached_job, context)
        assert res.outputs["cache-hit"] == "false"
        assert res.outputs["cache-matched-key"].startswith("npm-ubuntu-latest-")
        install = next(s for s in res.steps if s.name == "Install")
        assert install.status is StepStatus.SUCCESS

    def test_unknown_key_input_fails_job(self, cached_executor, context):
        j = job("x", sh("a", "true"), cache=cache("pip-{matrix.python}", ".venv"))
        res = cached_executor.execute(j, context)
        assert res.status is JobStatus.FAILED
        assert "matrix.python" in res.steps[0].error
        assert res.steps[1].status is StepStatus.SKIPPED

    def test_store_failure_is_tolerated(self, registry, tmp_path, context):
        class BrokenStore:
            def get(self, key, restore_keys=()):
                raise OSError("disk gone")

            def put(self, key, paths, root="."):
                raise OSError("disk gone")

            def restore(self, entry, root="."):
                raise OSError("disk gone")

        ex = RunExecutor(actions=registry, cache_store=BrokenStore(), workdir=tmp_path)
        j = job("x", sh("a", "mkdir -p out"), cache=cache("k-{os}", "out"))
        res = ex.execute(j, context)
        assert res.status is JobStatus.SUCCEEDED
        assert res.steps[0].continued
        assert res.steps[-1].name == SAVE_STEP
        assert res.steps[-1].continued


def test_expired_artifacts_are_purged(registry, tmp_path):
    (tmp_path / "report.txt").write_text("r")
    store = registry.artifacts
    store.store("short", tmp_path / "report.txt", retention_days=1)
    store.store("long", tmp_path / "report.txt", retention_days=30)
    removed = store.purge_expired(now=time.time() + 2 * 86400)
    assert removed == ["short"]
    assert (tmp_path / "artifacts" / "long").exists()
