from __future__ import annotations

import shutil
import subprocess

import pytest

from ciforge.config import RunnerConfig
from ciforge.git_facts.git import current_branch, get_remote_url, head_sha, is_dirty
from ciforge.model import EventType, SkipPolicy
from ciforge.runner import default_context

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    def git(*args):
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    git("init", "-b", "trunk")
    git("config", "user.email", "ci@example.com")
    git("config", "user.name", "CI")
    (tmp_path / "README.md").write_text("hello")
    git("add", "README.md")
    git("commit", "-m", "init")
    git("remote", "add", "origin", "https://example.com/acme/webapp.git")
    return tmp_path


@needs_git
def test_git_facts(repo):
    assert current_branch(repo) == "trunk"
    assert len(head_sha(repo)) == 40
    assert get_remote_url("origin", repo).endswith("webapp.git")
    assert not is_dirty(repo)
    (repo / "new.txt").write_text("x")
    assert is_dirty(repo)


@needs_git
def test_default_context_reads_git(repo):
    ctx = default_context(event="pull_request", repo_root=repo)
    assert ctx.event is EventType.PULL_REQUEST
    assert ctx.branch == "trunk"
    assert ctx.sha == head_sha(repo)


def test_default_context_outside_a_repo(tmp_path):
    ctx = default_context(repo_root=tmp_path)
    assert ctx.branch == "main"
    assert ctx.sha == ""


def test_config_from_env():
    cfg = RunnerConfig.from_env(
        {
            "CIFORGE_CAPACITY": "3",
            "CIFORGE_FAIL_FAST": "yes",
            "CIFORGE_SKIP_POLICY": "permissive",
            "CIFORGE_STEP_TIMEOUT": "90",
            "CIFORGE_CACHE_DIR": "/tmp/c",
        }
    )
    assert cfg.capacity == 3
    assert cfg.fail_fast
    assert cfg.skip_policy is SkipPolicy.PERMISSIVE
    assert cfg.step_timeout == 90.0
    assert cfg.cache_dir == "/tmp/c"


def test_config_overrides_ignore_unset_options():
    cfg = RunnerConfig.from_env({"CIFORGE_CAPACITY": "3"}).with_overrides(
        capacity=None, fail_fast=True, skip_policy="strict"
    )
    assert cfg.capacity == 3
    assert cfg.fail_fast
    assert cfg.skip_policy is SkipPolicy.STRICT


@pytest.mark.parametrize(
    "env",
    [{"CIFORGE_CAPACITY": "0"}, {"CIFORGE_FAIL_FAST": "maybe"}, {"CIFORGE_STEP_TIMEOUT": "-1"}],
)
def test_config_rejects_bad_values(env):
    with pytest.raises(ValueError):
        RunnerConfig.from_env(env)
