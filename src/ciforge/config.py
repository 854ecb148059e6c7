# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .actions import DEFAULT_ARTIFACT_DIR
from .cache import DEFAULT_CACHE_DIR
from .model import SkipPolicy

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def default_capacity() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_bool(value: str, name: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class RunnerConfig:
    """
    Runner knobs. Environment variables (CIFORGE_*) provide defaults; CLI
    options override them via `with_overrides`.
    """
    capacity: int = 1
    fail_fast: bool = False
    skip_policy: SkipPolicy = SkipPolicy.STRICT
    step_timeout: Optional[float] = None
    cache_dir: str = DEFAULT_CACHE_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    cache_keep: int = 5

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ValueError(f"step_timeout must be > 0, got {self.step_timeout}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RunnerConfig":
        env = os.environ if environ is None else environ
        timeout = env.get("CIFORGE_STEP_TIMEOUT")
        return cls(
            capacity=int(env.get("CIFORGE_CAPACITY", default_capacity())),
            fail_fast=_env_bool(env.get("CIFORGE_FAIL_FAST", "false"), "CIFORGE_FAIL_FAST"),
            skip_policy=SkipPolicy(env.get("CIFORGE_SKIP_POLICY", SkipPolicy.STRICT.value)),
            step_timeout=float(timeout) if timeout else None,
            cache_dir=env.get("CIFORGE_CACHE_DIR", DEFAULT_CACHE_DIR),
            artifact_dir=env.get("CIFORGE_ARTIFACT_DIR", DEFAULT_ARTIFACT_DIR),
            cache_keep=int(env.get("CIFORGE_CACHE_KEEP", "5")),
        )

    def with_overrides(self, **overrides) -> "RunnerConfig":
        """Apply the non-None overrides (CLI options left unset stay None)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "skip_policy" in changes:
            changes["skip_policy"] = SkipPolicy(changes["skip_policy"])
        return replace(self, **changes)
