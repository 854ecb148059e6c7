from __future__ import annotations

import pytest

from ciforge.actions import ActionRegistry, LocalArtifactStore
from ciforge.executor import RunExecutor
from ciforge.model import RunContext
from ciforge.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def registry(tmp_path):
    return ActionRegistry(artifacts=LocalArtifactStore(tmp_path / "artifacts"), workdir=tmp_path)


@pytest.fixture
def executor(tmp_path, registry):
    return RunExecutor(actions=registry, workdir=tmp_path)


@pytest.fixture
def context():
    return RunContext(event="push", branch="main", sha="0123456789abcdef")
