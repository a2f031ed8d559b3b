# expressions.py
"""
A small evaluator for `${{ ... }}` templates.

Supported:
  - context lookups: `matrix.os`, `env.NAME`, `secrets.TOKEN`,
    `steps.build.outputs.version`, `needs.lint.outputs.x`, `github.ref`
  - string/number/boolean literals: `'main'`, `3`, `true`
  - `==`, `!=`, `&&`, `||`, `!`, parentheses
  - status functions `success()`, `failure()`, `always()`, `cancelled()`

Anything not found in the context evaluates to an empty string, which is how
the hosted platforms behave too.
"""
from __future__ import annotations

import re
from typing import Any, Callable, List, Mapping, Optional

_TEMPLATE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)
_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<str>'(?:[^']|'')*')"
    r"|(?P<num>-?\d+(?:\.\d+)?)"
    r"|(?P<op>==|!=|&&|\|\||!|\(|\))"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-\*]+)*)"
    r")"
)


class ExpressionError(ValueError):
    pass


StatusFunctions = Mapping[str, Callable[[], bool]]


def lookup(context: Mapping[str, Any], path: str) -> Any:
    cur: Any = context
    for part in path.split("."):
        if isinstance(cur, Mapping):
            cur = cur.get(part)
        else:
            getter = getattr(cur, "get", None)
            cur = getter(part) if callable(getter) else None
        if cur is None:
            return ""
    return cur


def _tokenize(expr: str) -> List[tuple]:
    tokens: List[tuple] = []
    pos = 0
    expr = expr.rstrip()
    while pos < len(expr):
        m = _TOKEN.match(expr, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"cannot parse expression at {expr[pos:]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expr: str, context: Mapping[str, Any], functions: Optional[StatusFunctions]):
        self.tokens = _tokenize(expr)
        self.i = 0
        self.context = context
        self.functions = functions or {}

    def peek(self) -> Optional[tuple]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> tuple:
        tok = self.peek()
        if tok is None:
            raise ExpressionError("unexpected end of expression")
        self.i += 1
        return tok

    def parse(self) -> Any:
        value = self.or_expr()
        if self.peek() is not None:
            raise ExpressionError(f"unexpected token {self.peek()[1]!r}")
        return value

    def or_expr(self) -> Any:
        left = self.and_expr()
        while self.peek() == ("op", "||"):
            self.take()
            right = self.and_expr()
            left = left if truthy(left) else right
        return left

    def and_expr(self) -> Any:
        left = self.cmp_expr()
        while self.peek() == ("op", "&&"):
            self.take()
            right = self.cmp_expr()
            left = right if truthy(left) else left
        return left

    def cmp_expr(self) -> Any:
        left = self.unary()
        tok = self.peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.take()
            right = self.unary()
            equal = _normalize(left) == _normalize(right)
            return equal if tok[1] == "==" else not equal
        return left

    def unary(self) -> Any:
        if self.peek() == ("op", "!"):
            self.take()
            return not truthy(self.unary())
        return self.atom()

    def atom(self) -> Any:
        kind, text = self.take()
        if kind == "op" and text == "(":
            value = self.or_expr()
            if self.take() != ("op", ")"):
                raise ExpressionError("missing ')'")
            return value
        if kind == "str":
            return text[1:-1].replace("''", "'")
        if kind == "num":
            return float(text) if "." in text else int(text)
        if kind == "name":
            if self.peek() == ("op", "("):
                self.take()
                if self.take() != ("op", ")"):
                    raise ExpressionError(f"{text}() takes no arguments")
                fn = self.functions.get(text)
                if fn is None:
                    raise ExpressionError(f"unknown function {text}()")
                return fn()
            if text == "true":
                return True
            if text == "false":
                return False
            if text == "null":
                return None
            return lookup(self.context, text)
        raise ExpressionError(f"unexpected token {text!r}")


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    return value


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def evaluate(expr: str, context: Mapping[str, Any], functions: Optional[StatusFunctions] = None) -> Any:
    """Evaluate a bare expression (the text inside `${{ }}`)."""
    return _Parser(expr, context, functions).parse()


def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: str, context: Mapping[str, Any]) -> str:
    """Substitute every `${{ ... }}` in a string."""
    if "${{" not in template:
        return template
    return _TEMPLATE.sub(lambda m: to_str(evaluate(m.group(1), context)), template)


def render_partial(template: str, context: Mapping[str, Any], roots: tuple) -> str:
    """
    Substitute only templates whose expression is a plain lookup rooted at one
    of `roots`, leaving everything else for later. Used for `matrix.*` at load
    time, when steps/needs/secrets are not known yet.
    """
    def sub(m: "re.Match[str]") -> str:
        expr = m.group(1).strip()
        if re.fullmatch(r"[A-Za-z_][\w\-]*(\.[\w\-]+)*", expr) and expr.split(".", 1)[0] in roots:
            return to_str(lookup(context, expr))
        return m.group(0)

    if "${{" not in template:
        return template
    return _TEMPLATE.sub(sub, template)


def strip_template(expr: str) -> str:
    """`${{ always() }}` -> `always()`; bare expressions pass through."""
    m = _TEMPLATE.fullmatch(expr.strip())
    return m.group(1) if m else expr.strip()


_STATUS_CALL = re.compile(r"\b(success|failure|always|cancelled)\s*\(")


def calls_status_function(expr: Optional[str]) -> bool:
    """True if an `if:` expression decides for itself how to treat failures."""
    return expr is not None and bool(_STATUS_CALL.search(strip_template(str(expr))))


def evaluate_condition(expr: Optional[str], context: Mapping[str, Any], functions: StatusFunctions) -> bool:
    """
    Evaluate an `if:` condition. A condition that calls no status function is
    implicitly `success() && (...)`.
    """
    if expr is None or not str(expr).strip():
        return functions["success"]()
    inner = strip_template(str(expr))
    result = truthy(evaluate(inner, context, functions))
    if not _STATUS_CALL.search(inner):
        return functions["success"]() and result
    return result
