# actions.py
from __future__ import annotations

import contextlib
import json
import os
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .errors import ActionNotFoundError, StepExecutionError, StepTimeoutError
from .model import JobInstance, RunContext, Step

# Collaborators the executor talks to. The core never knows how an action
# runs or where an artifact ends up; it only sees these narrow interfaces.

OUTPUT_TAIL = 4000
DEFAULT_ARTIFACT_DIR = ".ciforge/artifacts"
DEFAULT_RETENTION_DAYS = 90

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "npx": "Install Node.js (includes npx) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "yarn": "Install yarn (e.g., corepack enable) or fix PATH.",
    "pnpm": "Install pnpm (e.g., corepack enable) or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass
class ActionOutcome:
    success: bool = True
    outputs: Dict[str, str] = field(default_factory=dict)
    output: str = ""
    error: str | None = None


class ActionInvoker(Protocol):
    def invoke(self, action_ref: str, inputs: Mapping[str, Any], context: RunContext) -> ActionOutcome:
        ...


class ArtifactStorage(Protocol):
    def store(self, name: str, path: str | Path, retention_days: int) -> str:
        ...


class CacheStorage(Protocol):
    def get(self, key: str, restore_keys=()):
        ...

    def put(self, key: str, paths, root=".") -> Any:
        ...

    def restore(self, entry, root=".") -> None:
        ...


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------

class LocalArtifactStore:
    """
    Directory-backed artifact storage:
      root/
        <name>/
          <copied file or tree>
          .retention.json   {"name", "retention_days", "stored_at_unix", "expires_at_unix"}
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()

    def store(self, name: str, path: str | Path, retention_days: int = DEFAULT_RETENTION_DAYS) -> str:
        src = Path(path)
        if not src.exists():
            raise FileNotFoundError(f"artifact path not found: {src}")
        if retention_days < 1:
            raise ValueError(f"retention_days must be >= 1, got {retention_days}")

        dest = self.root / name
        if dest.exists():
            shutil.rmtree(dest)
        dest.mkdir(parents=True)
        if src.is_dir():
            shutil.copytree(src, dest / src.name)
        else:
            shutil.copy2(src, dest / src.name)

        now = time.time()
        (dest / ".retention.json").write_text(
            json.dumps(
                {
                    "name": name,
                    "retention_days": retention_days,
                    "stored_at_unix": now,
                    "expires_at_unix": now + retention_days * 86400,
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        return str(dest)

    def purge_expired(self, now: float | None = None) -> list[str]:
        """Delete artifacts past their retention. Returns removed names."""
        now = time.time() if now is None else now
        removed = []
        if not self.root.exists():
            return removed
        for meta in sorted(self.root.glob("*/.retention.json")):
            data = json.loads(meta.read_text(encoding="utf-8"))
            if data.get("expires_at_unix", now + 1) <= now:
                shutil.rmtree(meta.parent)
                removed.append(data.get("name", meta.parent.name))
        return removed


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

ActionFn = Callable[[Mapping[str, Any], RunContext], Any]


class ActionRegistry:
    """
    Maps action references to Python callables.

    A callable receives (inputs, context) and may return an ActionOutcome, a
    mapping of outputs, or None (success without outputs). Raising counts
    as failure. References are matched exactly first, then without their
    `@version` suffix and owner prefix: "actions/upload-artifact@v4"
    resolves to "upload-artifact".
    """

    def __init__(self, artifacts: Optional[ArtifactStorage] = None, workdir: str | Path = "."):
        self._actions: Dict[str, ActionFn] = {}
        self.artifacts = artifacts or LocalArtifactStore()
        self.workdir = Path(workdir)
        self.register("upload-artifact", self._upload_artifact)

    def register(self, ref: str, fn: ActionFn | None = None):
        if fn is None:
            def deco(f: ActionFn) -> ActionFn:
                self._actions[ref] = f
                return f
            return deco
        self._actions[ref] = fn
        return fn

    def resolve(self, action_ref: str) -> ActionFn:
        candidates = [action_ref]
        bare = action_ref.split("@", 1)[0]
        candidates.append(bare)
        candidates.append(bare.rsplit("/", 1)[-1])
        for c in candidates:
            if c in self._actions:
                return self._actions[c]
        raise ActionNotFoundError(action_ref, list(self._actions))

    def invoke(self, action_ref: str, inputs: Mapping[str, Any], context: RunContext) -> ActionOutcome:
        fn = self.resolve(action_ref)
        ret = fn(inputs, context)
        if isinstance(ret, ActionOutcome):
            return ret
        if ret is None:
            return ActionOutcome()
        return ActionOutcome(outputs={str(k): str(v) for k, v in dict(ret).items()})

    def _upload_artifact(self, inputs: Mapping[str, Any], context: RunContext) -> ActionOutcome:
        name = inputs.get("name") or "artifact"
        if "path" not in inputs:
            return ActionOutcome(success=False, error="upload-artifact requires a 'path' input")
        retention = int(inputs.get("retention-days", DEFAULT_RETENTION_DAYS))
        location = self.artifacts.store(str(name), self.workdir / str(inputs["path"]), retention)
        return ActionOutcome(outputs={"artifact-path": location}, output=f"stored {name} -> {location}")


# ---------------------------------------------------------------------
# Shell steps
# ---------------------------------------------------------------------

@dataclass
class ShellResult:
    exit_code: int
    output: str
    outputs: Dict[str, str]


def _parse_output_file(text: str) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" in line:
            k, v = line.split("=", 1)
            if k.strip():
                outputs[k.strip()] = v
    return outputs


def step_env(instance: JobInstance, step: Step, context: RunContext) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(context.env)
    env.update(
        {
            "CI": "true",
            "CIFORGE_EVENT": context.event.value,
            "CIFORGE_BRANCH": context.branch,
            "CIFORGE_SHA": context.sha,
            "CIFORGE_JOB": instance.id,
        }
    )
    for axis, value in instance.matrix:
        env[f"CIFORGE_MATRIX_{axis.upper().replace('-', '_')}"] = str(value)
    env.update(instance.job.env)
    env.update(step.env)
    return env


def _kill_process_group(proc: subprocess.Popen) -> None:
    if not hasattr(os, "killpg"):
        proc.kill()
        return
    with contextlib.suppress(ProcessLookupError):
        os.killpg(proc.pid, signal.SIGKILL)


class ShellRunner:
    """Runs `run:` steps through the system shell, one subprocess per step."""

    def run(
        self,
        instance: JobInstance,
        step: Step,
        context: RunContext,
        workdir: Path,
        timeout: float | None = None,
    ) -> ShellResult:
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepExecutionError(
                job=instance.id,
                step=step.name,
                message=f"cwd not found: {cwd}",
            )

        fd, output_file = tempfile.mkstemp(prefix="ciforge-output-")
        os.close(fd)
        env = step_env(instance, step, context)
        env["CIFORGE_OUTPUT"] = output_file

        try:
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired as e:
                # the shell's children share its session; take them all down
                _kill_process_group(proc)
                partial, _ = proc.communicate()
                raise StepTimeoutError(
                    job=instance.id,
                    step=step.name,
                    message="timed out",
                    output=(partial or "")[-OUTPUT_TAIL:],
                    timeout=float(timeout or 0),
                ) from e

            output = (stdout or "") + (stderr or "")
            if proc.returncode != 0:
                details = {}
                tool = (step.run or "").split()[0] if (step.run or "").split() else ""
                if proc.returncode == 127 and tool in TOOL_HINTS:
                    details["hint"] = TOOL_HINTS[tool]
                raise StepExecutionError(
                    job=instance.id,
                    step=step.name,
                    message=f"command exited with {proc.returncode}: {step.run}",
                    exit_code=proc.returncode,
                    output=output[-OUTPUT_TAIL:],
                    details=details,
                )

            outputs = _parse_output_file(Path(output_file).read_text(encoding="utf-8"))
            return ShellResult(exit_code=proc.returncode, output=output[-OUTPUT_TAIL:], outputs=outputs)
        finally:
            Path(output_file).unlink(missing_ok=True)
