"""
Typed condition expressions.

Conditions (`if:`), concurrency keys and `${{ ... }}` placeholders in step
text are parsed once, at load time, into a small expression tree. The tree is
evaluated later against an explicit EvalScope, never against global state.

Grammar:

    or      := and ('||' and)*
    and     := unary ('&&' unary)*
    unary   := '!' unary | compare
    compare := primary (('=='|'!='|'<'|'<='|'>'|'>=') primary)?
    primary := literal | '(' or ')' | name '(' args ')' | name ('.' name)*

`&&` / `||` return operand values (first falsy / first truthy), so the same
tree renders `${{ run.head_ref || run.run_id }}`.

Python builders mirror the syntax::

    branch("main") & ~event("merge_group")
    always() & needs_result("hive").ne("skipped")
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import DefinitionError
from .model import JobStatus, RunContext

ROOTS = ("run", "matrix", "env", "vars", "needs")
STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")


# =============================================================================
# SCOPE
# =============================================================================

@dataclass
class EvalScope:
    """
    Everything an expression may look at.

    `needs` holds the combined result per needed template. `job_status` is
    set only while evaluating step conditions (the job's status so far).
    """
    context: RunContext = field(default_factory=RunContext)
    matrix: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Mapping[str, JobStatus] = field(default_factory=dict)
    job_status: Optional[JobStatus] = None
    allow_skipped_needs: bool = False

    def resolve(self, path: Tuple[str, ...]) -> Any:
        root, rest = path[0], path[1:]
        if root == "run":
            return self.context.lookup(rest[0]) if len(rest) == 1 else None
        if root == "matrix":
            return self.matrix.get(rest[0]) if len(rest) == 1 else None
        if root == "env":
            return self.env.get(rest[0]) if len(rest) == 1 else None
        if root == "vars":
            return self.context.variables.get(rest[0]) if len(rest) == 1 else None
        if root == "needs":
            if len(rest) == 2 and rest[1] == "result":
                result = self.needs.get(rest[0])
                return result.value if result is not None else None
            return None
        return None

    # ---- status functions ----

    def success(self) -> bool:
        if self.job_status is not None:
            return self.job_status in (JobStatus.SUCCEEDED, JobStatus.RUNNING)
        ok = {JobStatus.SUCCEEDED}
        if self.allow_skipped_needs:
            ok.add(JobStatus.SKIPPED)
        return all(r in ok for r in self.needs.values())

    def failure(self) -> bool:
        if self.job_status is not None:
            return self.job_status == JobStatus.FAILED
        return any(r == JobStatus.FAILED for r in self.needs.values())

    def cancelled(self) -> bool:
        if self.job_status is not None:
            return self.job_status == JobStatus.CANCELLED
        return any(r == JobStatus.CANCELLED for r in self.needs.values())


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, JobStatus):
        return value.value
    return str(value)


# =============================================================================
# TREE
# =============================================================================

class Expr:
    """Base node. Supports `&`, `|` and `~` so builders compose."""

    def evaluate(self, scope: EvalScope) -> Any:
        raise NotImplementedError

    def holds(self, scope: EvalScope) -> bool:
        return _truthy(self.evaluate(scope))

    def children(self) -> Tuple["Expr", ...]:
        return ()

    def walk(self) -> Iterator["Expr"]:
        yield self
        for child in self.children():
            yield from child.walk()

    def uses_status_function(self) -> bool:
        return any(isinstance(n, Call) and n.name in STATUS_FUNCTIONS for n in self.walk())

    def refs(self) -> List[Tuple[str, ...]]:
        return [n.path for n in self.walk() if isinstance(n, Ref)]

    def __and__(self, other: "Expr") -> "Expr":
        return And(self, _lift(other))

    def __or__(self, other: "Expr") -> "Expr":
        return Or(self, _lift(other))

    def __invert__(self) -> "Expr":
        return Not(self)

    def eq(self, other: Any) -> "Expr":
        return Compare("==", self, _lift(other))

    def ne(self, other: Any) -> "Expr":
        return Compare("!=", self, _lift(other))


@dataclass(frozen=True, eq=False)
class Literal(Expr):
    value: Any

    def evaluate(self, scope: EvalScope) -> Any:
        return self.value

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return "'" + self.value.replace("'", "''") + "'"
        if self.value is None:
            return "null"
        return _text(self.value)


@dataclass(frozen=True, eq=False)
class Ref(Expr):
    path: Tuple[str, ...]

    def evaluate(self, scope: EvalScope) -> Any:
        return scope.resolve(self.path)

    def __str__(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True, eq=False)
class Not(Expr):
    operand: Expr

    def evaluate(self, scope: EvalScope) -> Any:
        return not self.operand.holds(scope)

    def children(self) -> Tuple[Expr, ...]:
        return (self.operand,)

    def __str__(self) -> str:
        return f"!({self.operand})"


@dataclass(frozen=True, eq=False)
class And(Expr):
    left: Expr
    right: Expr

    def evaluate(self, scope: EvalScope) -> Any:
        value = self.left.evaluate(scope)
        if not _truthy(value):
            return value
        return self.right.evaluate(scope)

    def children(self) -> Tuple[Expr, ...]:
        return (self.left, self.right)

    def __str__(self) -> str:
        return f"({self.left} && {self.right})"


@dataclass(frozen=True, eq=False)
class Or(Expr):
    left: Expr
    right: Expr

    def evaluate(self, scope: EvalScope) -> Any:
        value = self.left.evaluate(scope)
        if _truthy(value):
            return value
        return self.right.evaluate(scope)

    def children(self) -> Tuple[Expr, ...]:
        return (self.left, self.right)

    def __str__(self) -> str:
        return f"({self.left} || {self.right})"


def _normalize(value: Any) -> Any:
    if isinstance(value, JobStatus):
        return value.value
    if isinstance(value, str):
        return value.lower()
    return value


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


@dataclass(frozen=True, eq=False)
class Compare(Expr):
    op: str
    left: Expr
    right: Expr

    def evaluate(self, scope: EvalScope) -> Any:
        a = _normalize(self.left.evaluate(scope))
        b = _normalize(self.right.evaluate(scope))
        try:
            return _COMPARATORS[self.op](a, b)
        except TypeError:
            # mixed types (e.g. None < 'x') never match
            return False

    def children(self) -> Tuple[Expr, ...]:
        return (self.left, self.right)

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return _normalize(needle) in [_normalize(h) for h in haystack]
    return _text(needle).lower() in _text(haystack).lower()


FUNCTIONS: Dict[str, Tuple[int, Callable[..., Any]]] = {
    # name -> (arity, impl). Status functions take the scope.
    "success": (0, lambda scope: scope.success()),
    "failure": (0, lambda scope: scope.failure()),
    "cancelled": (0, lambda scope: scope.cancelled()),
    "always": (0, lambda scope: True),
    "contains": (2, _contains),
    "startsWith": (2, lambda a, b: _text(a).lower().startswith(_text(b).lower())),
    "endsWith": (2, lambda a, b: _text(a).lower().endswith(_text(b).lower())),
}


@dataclass(frozen=True, eq=False)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...] = ()

    def evaluate(self, scope: EvalScope) -> Any:
        _arity, impl = FUNCTIONS[self.name]
        if self.name in STATUS_FUNCTIONS:
            return impl(scope)
        return impl(*(a.evaluate(scope) for a in self.args))

    def children(self) -> Tuple[Expr, ...]:
        return self.args

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


def _lift(value: Union[Expr, Any]) -> Expr:
    return value if isinstance(value, Expr) else Literal(value)


# =============================================================================
# PARSER
# =============================================================================

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,])
  | (?P<name>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise DefinitionError(f"unexpected character {text[pos]!r} at {pos} in expression: {text}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _take(self, text: Optional[str] = None) -> _Token:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of expression")
        if text is not None and tok.text != text:
            raise self._error(f"expected {text!r}, got {tok.text!r}")
        self.i += 1
        return tok

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text == text:
            self.i += 1
            return True
        return False

    def _error(self, message: str) -> DefinitionError:
        return DefinitionError(f"{message} in expression: {self.text}")

    def parse(self) -> Expr:
        if not self.tokens:
            raise self._error("empty expression")
        expr = self._or()
        if self._peek() is not None:
            raise self._error(f"unexpected {self._peek().text!r}")
        return expr

    def _or(self) -> Expr:
        expr = self._and()
        while self._accept("||"):
            expr = Or(expr, self._and())
        return expr

    def _and(self) -> Expr:
        expr = self._unary()
        while self._accept("&&"):
            expr = And(expr, self._unary())
        return expr

    def _unary(self) -> Expr:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Expr:
        left = self._primary()
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in _COMPARATORS:
            self.i += 1
            return Compare(tok.text, left, self._primary())
        return left

    def _primary(self) -> Expr:
        tok = self._take()
        if tok.kind == "number":
            return Literal(float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "string":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "op" and tok.text == "(":
            expr = self._or()
            self._take(")")
            return expr
        if tok.kind != "name":
            raise self._error(f"unexpected {tok.text!r}")

        word = tok.text
        if word in ("true", "false"):
            return Literal(word == "true")
        if word == "null":
            return Literal(None)
        if self._accept("("):
            return self._call(word)

        path = [word]
        while self._accept("."):
            part = self._take()
            if part.kind not in ("name", "number"):
                raise self._error(f"unexpected {part.text!r} after '.'")
            path.append(part.text)
        return self._ref(tuple(path))

    def _call(self, name: str) -> Expr:
        if name not in FUNCTIONS:
            raise self._error(f"unknown function {name}()")
        args: List[Expr] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._take(")")
        arity, _impl = FUNCTIONS[name]
        if len(args) != arity:
            raise self._error(f"{name}() takes {arity} argument(s), got {len(args)}")
        return Call(name, tuple(args))

    def _ref(self, path: Tuple[str, ...]) -> Expr:
        root = path[0]
        if root not in ROOTS:
            raise self._error(f"unknown name {root!r} (expected one of {', '.join(ROOTS)})")
        if root == "needs":
            if len(path) != 3 or path[2] != "result":
                raise self._error("needs references must look like needs.<job>.result")
        elif len(path) != 2:
            raise self._error(f"{root} references must look like {root}.<name>")
        return Ref(path)


_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def parse_condition(text: Union[str, bool, Expr]) -> Expr:
    """Parse an `if:` condition. `${{ ... }}` wrapping is optional."""
    if isinstance(text, Expr):
        return text
    if isinstance(text, bool):
        return Literal(text)
    m = _WRAPPED_RE.match(text)
    if m and "${{" not in m.group(1):
        text = m.group(1)
    return _Parser(text.strip()).parse()


# =============================================================================
# TEMPLATES (`${{ ... }}` placeholders in text)
# =============================================================================

_PLACEHOLDER_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


@dataclass(frozen=True)
class Template:
    source: str
    parts: Tuple[Union[str, Expr], ...]

    @classmethod
    def parse(cls, source: str) -> "Template":
        parts: List[Union[str, Expr]] = []
        pos = 0
        for m in _PLACEHOLDER_RE.finditer(source):
            if m.start() > pos:
                parts.append(source[pos:m.start()])
            parts.append(_Parser(m.group(1).strip()).parse())
            pos = m.end()
        if pos < len(source):
            parts.append(source[pos:])
        return cls(source=source, parts=tuple(parts))

    @property
    def is_static(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)

    def refs(self) -> List[Tuple[str, ...]]:
        out: List[Tuple[str, ...]] = []
        for p in self.parts:
            if isinstance(p, Expr):
                out.extend(p.refs())
        return out

    def render(self, scope: EvalScope) -> str:
        return "".join(p if isinstance(p, str) else _text(p.evaluate(scope)) for p in self.parts)

    def __str__(self) -> str:
        return self.source


def render(text: str, scope: EvalScope) -> str:
    if "${{" not in text:
        return text
    return Template.parse(text).render(scope)


# =============================================================================
# BUILDERS
# =============================================================================

def ref(path: str) -> Ref:
    return Ref(tuple(path.split(".")))


def always() -> Expr:
    return Call("always")


def success() -> Expr:
    return Call("success")


def failure() -> Expr:
    return Call("failure")


def cancelled() -> Expr:
    return Call("cancelled")


def branch(name: str) -> Expr:
    return Compare("==", ref("run.branch"), Literal(name))


def event(kind: str) -> Expr:
    return Compare("==", ref("run.event"), Literal(kind))


def needs_result(job: str) -> Ref:
    return Ref(("needs", job, "result"))


__all__ = [
    "EvalScope",
    "Expr",
    "Literal",
    "Ref",
    "Not",
    "And",
    "Or",
    "Compare",
    "Call",
    "Template",
    "parse_condition",
    "render",
    "ref",
    "always",
    "success",
    "failure",
    "cancelled",
    "branch",
    "event",
    "needs_result",
]
