"""Restricted `if:` expression language for job conditions.

Expressions are parsed by a small recursive-descent parser into frozen node
dataclasses and evaluated by structural recursion against a RunContext.
Nothing is ever passed to eval().

Supported::

    event == 'push' && branch == 'main'
    !(github.event_name == 'pull_request')
    needs.build.result == 'success' || always()
    startsWith(github.ref, 'refs/tags/') && needs.build.outputs.version != ''
    ${{ matrix.node == 20 }}

Unknown fields raise ExpressionError instead of evaluating false, so a typo
in a deploy gate fails the job loudly rather than skipping it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ExpressionError
from .model import JobInstance, JobResult, JobStatus, RunContext, SkipPolicy

__all__ = [
    "ConditionEvaluator",
    "parse",
    "Literal",
    "Path",
    "Not",
    "And",
    "Or",
    "Compare",
    "Call",
]


# ---------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Union[str, float, int, bool, None]


@dataclass(frozen=True)
class Path:
    parts: Tuple[str, ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!="
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...] = ()


Node = Union[Literal, Path, Not, And, Or, Compare, Call]

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
STRING_FUNCTIONS = {"contains": 2, "startswith": 2, "endswith": 2}


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<sq>'(?:[^']|'')*')
  | (?P<dq>"(?:[^"\\]|\\.)*")
  | (?P<num>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_WRAPPER_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expression):
        m = _TOKEN_RE.match(expression, pos)
        if not m:
            raise ExpressionError(expression, f"unexpected character {expression[pos]!r} at {pos}")
        kind = m.lastgroup
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", pos))
    return tokens


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.i = 0

    def _peek(self) -> _Token:
        return self.tokens[self.i]

    def _next(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok.kind == "op" and tok.text == text:
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            tok = self._peek()
            found = tok.text or "end of expression"
            raise ExpressionError(self.expression, f"expected {text!r}, found {found!r} at {tok.pos}")

    def parse(self) -> Node:
        if self._peek().kind == "eof":
            raise ExpressionError(self.expression, "empty expression")
        node = self._or()
        tok = self._peek()
        if tok.kind != "eof":
            raise ExpressionError(self.expression, f"unexpected {tok.text!r} at {tok.pos}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._unary()
        while self._accept("&&"):
            node = And(node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Node:
        left = self._primary()
        tok = self._peek()
        if tok.kind == "op" and tok.text in ("==", "!="):
            self.i += 1
            return Compare(tok.text, left, self._primary())
        return left

    def _primary(self) -> Node:
        tok = self._next()
        if tok.kind == "op" and tok.text == "(":
            node = self._or()
            self._expect(")")
            return node
        if tok.kind == "sq":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "dq":
            return Literal(re.sub(r"\\(.)", r"\1", tok.text[1:-1]))
        if tok.kind == "num":
            return Literal(float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "ident":
            low = tok.text.lower()
            if low == "true":
                return Literal(True)
            if low == "false":
                return Literal(False)
            if low == "null":
                return Literal(None)
            if self._accept("("):
                return self._call(tok)
            parts = [tok.text]
            while self._accept("."):
                seg = self._next()
                if seg.kind not in ("ident", "num"):
                    raise ExpressionError(self.expression, f"expected field name after '.' at {seg.pos}")
                parts.append(seg.text)
            return Path(tuple(parts))
        found = tok.text or "end of expression"
        raise ExpressionError(self.expression, f"unexpected {found!r} at {tok.pos}")

    def _call(self, name_tok: _Token) -> Node:
        name = name_tok.text.lower()
        args: List[Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")

        if name in STATUS_FUNCTIONS:
            if args:
                raise ExpressionError(self.expression, f"{name_tok.text}() takes no arguments")
        elif name in STRING_FUNCTIONS:
            if len(args) != STRING_FUNCTIONS[name]:
                raise ExpressionError(
                    self.expression,
                    f"{name_tok.text}() takes {STRING_FUNCTIONS[name]} arguments, got {len(args)}",
                )
        else:
            raise ExpressionError(self.expression, f"unknown function {name_tok.text}()")
        return Call(name, tuple(args))


@lru_cache(maxsize=256)
def parse(expression: str) -> Node:
    """Parse an expression (optionally wrapped in ``${{ }}``) into a node tree."""
    m = _WRAPPER_RE.match(expression)
    if m:
        expression = m.group(1)
    return _Parser(expression.strip()).parse()


def has_status_check(node: Node) -> bool:
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(has_status_check(a) for a in node.args)
    if isinstance(node, Not):
        return has_status_check(node.operand)
    if isinstance(node, (And, Or, Compare)):
        return has_status_check(node.left) or has_status_check(node.right)
    return False


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

_RESULT_WORDS = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.CANCELLED: "cancelled",
}


def aggregate_result(results: List[JobResult]) -> str:
    """A matrix job's combined result, as `needs.<job>.result` reports it."""
    statuses = {r.status for r in results}
    if JobStatus.FAILED in statuses:
        return "failure"
    if JobStatus.CANCELLED in statuses:
        return "cancelled"
    if statuses == {JobStatus.SKIPPED}:
        return "skipped"
    return "success"


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    if isinstance(a, bool) and isinstance(b, bool):
        return a == b
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        na, nb = _as_number(a), _as_number(b)
        if na is not None and nb is not None:
            return na == nb
    return _as_text(a) == _as_text(b)


class ConditionEvaluator:
    """
    Evaluates job conditions.

    An expression with no status check (`success()`, `failure()`,
    `always()`, `cancelled()`) is implicitly `success() && (expr)`, and a
    job without a condition runs on `success()`.

    `cancelled()` reports whether the run was aborted. The scheduler cancels
    every waiting instance on abort before reading its condition, so as a job
    gate it never lets a job run.
    """

    def __init__(self, skip_policy: SkipPolicy | str = SkipPolicy.STRICT):
        self.skip_policy = SkipPolicy(skip_policy)

    def effective(self, expression: Optional[str]) -> Node:
        if expression is None or not expression.strip():
            return Call("success")
        node = parse(expression)
        if not has_status_check(node):
            node = And(Call("success"), node)
        return node

    def evaluate(
        self,
        expression: Optional[str],
        context: RunContext,
        instance: Optional[JobInstance] = None,
    ) -> bool:
        text = expression or "success()"
        node = self.effective(expression)
        return _truthy(_Evaluation(self, text, context, instance).eval(node))


class _Evaluation:
    def __init__(
        self,
        evaluator: ConditionEvaluator,
        expression: str,
        context: RunContext,
        instance: Optional[JobInstance],
    ):
        self.evaluator = evaluator
        self.expression = expression
        self.context = context
        self.instance = instance

    def fail(self, reason: str) -> ExpressionError:
        return ExpressionError(self.expression, reason)

    def eval(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Path):
            return self.lookup(node.parts)
        if isinstance(node, Not):
            return not _truthy(self.eval(node.operand))
        if isinstance(node, And):
            left = self.eval(node.left)
            return self.eval(node.right) if _truthy(left) else left
        if isinstance(node, Or):
            left = self.eval(node.left)
            return left if _truthy(left) else self.eval(node.right)
        if isinstance(node, Compare):
            same = _equals(self.eval(node.left), self.eval(node.right))
            return same if node.op == "==" else not same
        if isinstance(node, Call):
            return self.call(node)
        raise self.fail(f"unsupported node {type(node).__name__}")

    # -- functions -------------------------------------------------------

    def call(self, node: Call) -> Any:
        if node.name == "always":
            return True
        if node.name == "cancelled":
            return self.context.cancelled
        if node.name == "success":
            if self.context.cancelled:
                return False
            ok = {JobStatus.SUCCEEDED}
            if self.evaluator.skip_policy is SkipPolicy.PERMISSIVE:
                ok.add(JobStatus.SKIPPED)
            return all(r.status in ok for r in self.dependency_results())
        if node.name == "failure":
            return any(r.status is JobStatus.FAILED for r in self.dependency_results())

        args = [_as_text(self.eval(a)) for a in node.args]
        if node.name == "contains":
            return args[1] in args[0]
        if node.name == "startswith":
            return args[0].startswith(args[1])
        if node.name == "endswith":
            return args[0].endswith(args[1])
        raise self.fail(f"unknown function {node.name}()")

    def dependency_results(self) -> List[JobResult]:
        if self.instance is None:
            return []
        out: List[JobResult] = []
        for need in self.instance.job.needs:
            out.extend(self.context.results_for(need))
        return out

    # -- fields ----------------------------------------------------------

    def lookup(self, parts: Tuple[str, ...]) -> Any:
        root, rest = parts[0], parts[1:]
        ctx = self.context

        if root in ("event", "branch", "sha", "ref") and not rest:
            return {
                "event": ctx.event.value,
                "branch": ctx.branch,
                "sha": ctx.sha,
                "ref": ctx.ref,
            }[root]

        if root == "github" and len(rest) == 1:
            github: Dict[str, str] = {
                "event_name": ctx.event.value,
                "ref": ctx.ref,
                "ref_name": ctx.branch,
                "sha": ctx.sha,
            }
            if rest[0] in github:
                return github[rest[0]]

        if root == "matrix" and len(rest) == 1:
            if self.instance is None:
                raise self.fail("matrix is only available inside a job")
            values = self.instance.matrix_values
            if rest[0] not in values:
                raise self.fail(
                    f"unknown matrix axis {rest[0]!r} for job '{self.instance.name}' "
                    f"(axes: {sorted(values)})"
                )
            return values[rest[0]]

        if root == "env" and len(rest) == 1:
            env = dict(ctx.env)
            if self.instance is not None:
                env.update(self.instance.job.env)
            if rest[0] not in env:
                raise self.fail(f"unknown env variable {rest[0]!r}")
            return env[rest[0]]

        if root == "needs" and len(rest) >= 2:
            return self.lookup_needs(rest)

        raise self.fail(f"unknown field {'.'.join(parts)!r}")

    def lookup_needs(self, rest: Tuple[str, ...]) -> Any:
        job_name, field_name, tail = rest[0], rest[1], rest[2:]
        if self.instance is not None and job_name not in self.instance.job.needs:
            raise self.fail(
                f"job '{self.instance.name}' does not need '{job_name}' "
                f"(needs: {list(self.instance.job.needs)})"
            )
        results = self.context.results_for(job_name)
        if not results:
            raise self.fail(f"job '{job_name}' has no result yet")

        if field_name == "result" and not tail:
            return aggregate_result(results)
        if field_name == "outputs" and len(tail) == 1:
            merged: Dict[str, str] = {}
            for r in results:
                merged.update(r.outputs)
            return merged.get(tail[0], "")
        raise self.fail(f"unknown field 'needs.{'.'.join(rest)}'")
