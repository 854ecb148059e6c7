# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class CIError(Exception):
    """Base class for every error raised by ciforge."""


class WorkflowError(CIError, ValueError):
    """Invalid workflow configuration. Fatal: no run starts."""


class CycleError(WorkflowError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class CacheKeyError(WorkflowError):
    """A cache key template references an input that was not provided."""


class ExpressionError(CIError):
    """Raised when an `if` expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Expression error in '{expression}': {reason}")


@dataclass(eq=False)
class StepExecutionError(CIError):
    """
    A step exited non-zero or raised.

    Carries enough context for the run report without a traceback.
    """
    job: str
    step: str
    message: str
    exit_code: Optional[int] = None
    output: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] step '{self.step}' failed: {self.message}"]
        if self.exit_code is not None:
            lines.append(f"exit={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class StepTimeoutError(StepExecutionError):
    timeout: float = 0.0

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


class ActionNotFoundError(CIError, LookupError):
    def __init__(self, ref: str, known: List[str]):
        self.ref = ref
        super().__init__(f"Unknown action '{ref}'. Known actions: {sorted(known)}")



class CancellationSignal(Exception):
    """Cooperative stop request raised at a step boundary. Not a CIError."""

    def __init__(self, job: str, step: Optional[str] = None):
        self.job = job
        self.step = step
        where = f" before step '{step}'" if step else ""
        super().__init__(f"[{job}] cancelled{where}")
