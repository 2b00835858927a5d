# expressions.py
"""
Condition and interpolation language.

Conditions look like the ones in hosted CI workflows:

    startsWith(github.ref, 'refs/tags/v') && matrix.os != 'windows-latest'
    ref matches "v*"
    always()

A condition may be wrapped in `${{ ... }}`. Strings may embed any number
of `${{ expr }}` segments, which `interpolate()` replaces with the value
of the expression.

Evaluation never has side effects. Anything the context can't resolve
raises EvalError.
"""
from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

from .errors import EvalError
from .model import TriggerContext, format_value

STATUS_FUNCTIONS = frozenset({"always", "never", "success", "failure", "cancelled"})

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.S)
_SEGMENT = re.compile(r"\$\{\{(.*?)\}\}", re.S)

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<num>\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),.\[\]])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    )""",
    re.X,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


# ---------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------

@dataclass
class EvalContext:
    """
    Everything an expression may read.

    `status` is the outcome the status predicates look at: for a job gate
    it summarizes the prerequisites, for a step it summarizes the earlier
    steps of the same job.
    """
    trigger: TriggerContext
    matrix: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    needs: Dict[str, str] = field(default_factory=dict)
    status: str = "success"  # success | failure | cancelled
    secrets: Optional[Mapping[str, str]] = None

    def with_status(self, status: str) -> "EvalContext":
        return EvalContext(
            trigger=self.trigger,
            matrix=self.matrix,
            env=self.env,
            needs=self.needs,
            status=status,
            secrets=self.secrets,
        )


def _runner_context() -> Dict[str, str]:
    system = platform.system()
    os_name = {"Darwin": "macOS"}.get(system, system or "Linux")
    return {"os": os_name, "arch": platform.machine() or "unknown"}


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

def _tokenize(src: str) -> List[tuple]:
    tokens = []
    pos = 0
    src = src.rstrip()
    while pos < len(src):
        m = _TOKEN.match(src, pos)
        if not m or m.end() == pos:
            raise EvalError(f"unexpected character {src[pos:pos + 1]!r} at offset {pos}", src)
        pos = m.end()
        kind = m.lastgroup
        text = m.group(kind)
        if kind == "num":
            tokens.append(("lit", float(text) if "." in text else int(text)))
        elif kind == "str":
            tokens.append(("lit", _unquote(text)))
        elif kind == "ident" and text in _KEYWORDS:
            tokens.append(("lit", _KEYWORDS[text]))
        elif kind == "ident" and text in ("and", "or", "not", "matches"):
            tokens.append(("op", text))
        else:
            tokens.append((kind, text))
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    if text[0] == "'":
        return body.replace("''", "'")
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    def __init__(self, src: str):
        self.src = src
        self.tokens = _tokenize(src)
        self.pos = 0

    def peek(self, *values: str) -> bool:
        if self.pos >= len(self.tokens):
            return False
        kind, val = self.tokens[self.pos]
        return kind in ("op", "ident") and val in values

    def take(self) -> tuple:
        if self.pos >= len(self.tokens):
            raise EvalError("unexpected end of expression", self.src)
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def expect(self, value: str) -> None:
        kind, val = self.take()
        if val != value or kind != "op":
            raise EvalError(f"expected {value!r}, got {val!r}", self.src)

    def parse(self) -> tuple:
        if not self.tokens:
            raise EvalError("empty expression", self.src)
        node = self.parse_or()
        if self.pos != len(self.tokens):
            raise EvalError(f"unexpected token {self.tokens[self.pos][1]!r}", self.src)
        return node

    def parse_or(self) -> tuple:
        node = self.parse_and()
        while self.peek("||", "or"):
            self.take()
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self) -> tuple:
        node = self.parse_not()
        while self.peek("&&", "and"):
            self.take()
            node = ("and", node, self.parse_not())
        return node

    def parse_not(self) -> tuple:
        if self.peek("not"):
            self.take()
            return ("not", self.parse_not())
        return self.parse_cmp()

    def parse_cmp(self) -> tuple:
        node = self.parse_unary()
        if self.peek("==", "!=", "<", "<=", ">", ">=", "matches"):
            _, op = self.take()
            node = ("cmp", op, node, self.parse_unary())
        return node

    def parse_unary(self) -> tuple:
        if self.peek("!"):
            self.take()
            return ("not", self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> tuple:
        kind, val = self.take()
        if kind == "lit":
            return ("lit", val)
        if kind == "op" and val == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind != "ident":
            raise EvalError(f"unexpected token {val!r}", self.src)

        if self.peek("("):
            self.take()
            args: List[tuple] = []
            if not self.peek(")"):
                args.append(self.parse_or())
                while self.peek(","):
                    self.take()
                    args.append(self.parse_or())
            self.expect(")")
            return ("call", val, args)

        parts = [val]
        while self.peek(".", "["):
            _, sep = self.take()
            if sep == ".":
                k, name = self.take()
                if k not in ("ident", "lit") or not isinstance(name, (str, int)):
                    raise EvalError(f"expected property name after '.', got {name!r}", self.src)
                parts.append(str(name))
            else:
                k, name = self.take()
                if k != "lit":
                    raise EvalError("expected literal index inside '[...]'", self.src)
                self.expect("]")
                parts.append(str(name))
        return ("ref", tuple(parts))


@dataclass(frozen=True)
class Expression:
    source: str
    node: tuple

    @property
    def uses_status(self) -> bool:
        return _uses_status(self.node)


def _uses_status(node: tuple) -> bool:
    tag = node[0]
    if tag == "call":
        return node[1] in STATUS_FUNCTIONS or any(_uses_status(a) for a in node[2])
    if tag in ("and", "or"):
        return _uses_status(node[1]) or _uses_status(node[2])
    if tag == "not":
        return _uses_status(node[1])
    if tag == "cmp":
        return _uses_status(node[2]) or _uses_status(node[3])
    return False


def unwrap(src: str) -> str:
    m = _WRAPPED.match(src)
    return m.group(1) if m else src


@lru_cache(maxsize=512)
def parse(src: str) -> Expression:
    """Parse a condition. Syntax errors raise EvalError."""
    return Expression(source=src, node=_Parser(unwrap(src)).parse())


def references_status(src: str | None) -> bool:
    """True if the condition calls always()/never()/success()/failure()/cancelled()."""
    if not src:
        return False
    return parse(src).uses_status


def check_syntax(src: str) -> None:
    parse(src)


def check_template(text: str) -> None:
    for m in _SEGMENT.finditer(text):
        parse(m.group(1))


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def _resolve(parts: tuple, ctx: EvalContext, src: str) -> Any:
    root, rest = parts[0], list(parts[1:])
    trig = ctx.trigger

    github = {
        "ref": trig.ref,
        "ref_name": trig.ref_name,
        "ref_type": trig.ref_type,
        "event_name": trig.event,
        "sha": trig.sha or "",
        "repository": trig.repository or "",
    }
    shortcuts = {
        "ref": trig.ref,
        "ref_name": trig.ref_name,
        "event": trig.event,
        "branch": trig.branch,
        "tag": trig.tag,
        "sha": trig.sha or "",
    }

    if root in shortcuts and not rest:
        return shortcuts[root]

    if root == "github":
        value: Any = github
    elif root == "matrix":
        value = ctx.matrix
    elif root == "env":
        value = ctx.env
    elif root == "secrets":
        value = ctx.secrets if ctx.secrets is not None else os.environ
    elif root == "runner":
        value = _runner_context()
    elif root == "needs":
        value = {name: {"result": result} for name, result in ctx.needs.items()}
    else:
        raise EvalError(f"unknown identifier {root!r}", src)

    if not rest:
        raise EvalError(f"{root!r} needs a property (e.g. {root}.name)", src)

    path = root
    for part in rest:
        path = f"{path}.{part}"
        if not isinstance(value, Mapping) or part not in value:
            raise EvalError(f"unknown identifier {path!r}", src)
        value = value[part]
    return value


def _as_number(value: Any, src: str) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        raise EvalError(f"cannot compare {value!r} as a number", src) from None


def _equal(a: Any, b: Any) -> bool:
    if type(a) is type(b):
        return a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)) and not isinstance(a, bool) and not isinstance(b, bool):
        return a == b
    return format_value(a) == format_value(b)


def _call(name: str, args: List[Any], ctx: EvalContext, src: str) -> Any:
    if name in STATUS_FUNCTIONS:
        if args:
            raise EvalError(f"{name}() takes no arguments", src)
        if name == "always":
            return True
        if name == "never":
            return False
        if name == "success":
            return ctx.status == "success"
        if name == "failure":
            return ctx.status == "failure"
        return ctx.status == "cancelled"

    def arity(n: int) -> None:
        if len(args) != n:
            raise EvalError(f"{name}() takes {n} argument(s), got {len(args)}", src)

    if name == "startsWith":
        arity(2)
        return format_value(args[0]).startswith(format_value(args[1]))
    if name == "endsWith":
        arity(2)
        return format_value(args[0]).endswith(format_value(args[1]))
    if name == "contains":
        arity(2)
        if isinstance(args[0], (list, tuple)):
            return any(_equal(item, args[1]) for item in args[0])
        return format_value(args[1]) in format_value(args[0])
    if name == "format":
        if not args:
            raise EvalError("format() needs a template", src)
        template = format_value(args[0])
        return re.sub(
            r"\{(\d+)\}",
            lambda m: format_value(args[1 + int(m.group(1))]) if 1 + int(m.group(1)) < len(args) else m.group(0),
            template,
        )
    if name == "join":
        if len(args) not in (1, 2):
            raise EvalError("join() takes 1 or 2 arguments", src)
        sep = format_value(args[1]) if len(args) == 2 else ","
        items = args[0] if isinstance(args[0], (list, tuple)) else [args[0]]
        return sep.join(format_value(i) for i in items)
    raise EvalError(f"unknown function {name}()", src)


def _eval(node: tuple, ctx: EvalContext, src: str) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "ref":
        return _resolve(node[1], ctx, src)
    if tag == "not":
        return not truthy(_eval(node[1], ctx, src))
    if tag == "and":
        left = _eval(node[1], ctx, src)
        return _eval(node[2], ctx, src) if truthy(left) else left
    if tag == "or":
        left = _eval(node[1], ctx, src)
        return left if truthy(left) else _eval(node[2], ctx, src)
    if tag == "call":
        args = [_eval(a, ctx, src) for a in node[2]]
        return _call(node[1], args, ctx, src)
    if tag == "cmp":
        op = node[1]
        a = _eval(node[2], ctx, src)
        b = _eval(node[3], ctx, src)
        if op == "==":
            return _equal(a, b)
        if op == "!=":
            return not _equal(a, b)
        if op == "matches":
            return fnmatchcase(format_value(a), format_value(b))
        x, y = _as_number(a, src), _as_number(b, src)
        return {"<": x < y, "<=": x <= y, ">": x > y, ">=": x >= y}[op]
    raise EvalError(f"bad expression node {tag!r}", src)


def evaluate(src: str, ctx: EvalContext) -> Any:
    expr = parse(src)
    return _eval(expr.node, ctx, src)


def evaluate_condition(src: str | None, ctx: EvalContext) -> bool:
    """
    Evaluate a gate. An empty condition means success().
    A condition without any status predicate is implicitly `success() && (...)`.
    """
    if not src or not src.strip():
        return ctx.status == "success"
    expr = parse(src)
    if not expr.uses_status and ctx.status != "success":
        return False
    return truthy(_eval(expr.node, ctx, src))


def interpolate(text: str, ctx: EvalContext) -> str:
    """Replace every `${{ expr }}` in `text` with the expression's value."""
    if "${{" not in text:
        return text
    return _SEGMENT.sub(lambda m: format_value(evaluate(m.group(1), ctx)), text)


def interpolate_value(value: Any, ctx: EvalContext) -> Any:
    """interpolate() applied through lists and mappings."""
    if isinstance(value, str):
        return interpolate(value, ctx)
    if isinstance(value, list):
        return [interpolate_value(v, ctx) for v in value]
    if isinstance(value, dict):
        return {k: interpolate_value(v, ctx) for k, v in value.items()}
    return value
