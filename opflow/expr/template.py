"""Compiled declaration values.

Declaration values (task scope entries, ``hosts:`` bindings, ``when:``
conditions) are compiled once at load time:

- a string that is exactly ``${expr}`` evaluates to the expression's node
  set, keeping references into the model tree;
- a string mixing text and ``${expr}`` is interpolated into one string;
- mappings and sequences are compiled recursively and resolve to plain
  data;
- anything else is a static value.

Example:
    value = compile_value("${$$host.hostname}.example.com")
    value.resolve(scope)   # (NodeRef(detached, 'zeus.example.com'),)
"""

from typing import Any, Dict, List, Tuple, Union

from opflow.exceptions import ExpressionSyntaxError
from . import ast
from .evaluator import evaluate
from .parser import parse_expression
from .scope import Scope
from .values import NodeSet, single, to_text, unwrap

_OPEN = '${'


def _find_close(text: str, start: int) -> int:
    """Return the index of the ``}`` closing an expression opened before
    ``start``; braces inside quoted strings are ignored."""
    depth = 0
    quote = None
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == '\\':
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch in '{[(':
            depth += 1
        elif ch in ')]':
            depth -= 1
        elif ch == '}':
            if depth == 0:
                return i
            depth -= 1
        i += 1
    return -1


def split_template(text: str) -> List[Union[str, ast.Expr]]:
    """Split ``text`` into literal chunks and parsed expressions.

    Raises:
        ExpressionSyntaxError: On an unterminated ``${`` or invalid
            expression.
    """
    parts: List[Union[str, ast.Expr]] = []
    pos = 0
    while True:
        start = text.find(_OPEN, pos)
        if start < 0:
            if pos < len(text):
                parts.append(text[pos:])
            return parts
        if start > pos:
            parts.append(text[pos:start])
        end = _find_close(text, start + len(_OPEN))
        if end < 0:
            raise ExpressionSyntaxError(text, "unterminated '${'")
        parts.append(parse_expression(text[start + len(_OPEN):end]))
        pos = end + 1


class Value:
    """A compiled declaration value."""

    def resolve(self, scope: Scope) -> NodeSet:
        raise NotImplementedError

    def plain(self, scope: Scope) -> Any:
        """Resolve and unwrap into plain data."""
        return unwrap(self.resolve(scope))


class StaticValue(Value):

    def __init__(self, value: Any):
        self.value = value

    def resolve(self, scope: Scope) -> NodeSet:
        return single(self.value)

    def __repr__(self) -> str:
        return f'StaticValue({self.value!r})'


class ExprValue(Value):
    """``${expr}`` on its own."""

    def __init__(self, text: str, expr: ast.Expr):
        self.text = text
        self.expr = expr

    def resolve(self, scope: Scope) -> NodeSet:
        return evaluate(self.expr, scope)

    def __repr__(self) -> str:
        return f'ExprValue({self.text!r})'


class InterpolatedValue(Value):
    """Text with embedded ``${expr}`` parts."""

    def __init__(self, text: str, parts: List[Union[str, ast.Expr]]):
        self.text = text
        self.parts = parts

    def render(self, scope: Scope) -> str:
        chunks = []
        for part in self.parts:
            if isinstance(part, str):
                chunks.append(part)
            else:
                chunks.append(to_text(evaluate(part, scope)))
        return ''.join(chunks)

    def resolve(self, scope: Scope) -> NodeSet:
        return single(self.render(scope))

    def __repr__(self) -> str:
        return f'InterpolatedValue({self.text!r})'


class MappingValue(Value):

    def __init__(self, items: Dict[str, Value]):
        self.items = items

    def resolve(self, scope: Scope) -> NodeSet:
        return single({k: v.plain(scope) for k, v in self.items.items()})


class SequenceValue(Value):

    def __init__(self, items: List[Value]):
        self.items = items

    def resolve(self, scope: Scope) -> NodeSet:
        return single([v.plain(scope) for v in self.items])


def compile_value(raw: Any) -> Value:
    """Compile a raw declaration value."""
    if isinstance(raw, Value):
        return raw
    if isinstance(raw, str):
        if _OPEN not in raw:
            return StaticValue(raw)
        parts = split_template(raw)
        if len(parts) == 1 and isinstance(parts[0], ast.Expr):
            return ExprValue(raw, parts[0])
        return InterpolatedValue(raw, parts)
    if isinstance(raw, dict):
        return MappingValue({str(k): compile_value(v) for k, v in raw.items()})
    if isinstance(raw, list):
        return SequenceValue([compile_value(v) for v in raw])
    return StaticValue(raw)


def compile_scope(raw: Any) -> Tuple[Tuple[str, Value], ...]:
    """Compile an ordered ``scope:`` mapping into (name, value) pairs."""
    if not raw:
        return ()
    return tuple((str(name), compile_value(value)) for name, value in raw.items())


def resolve_scope(entries: Tuple[Tuple[str, Value], ...], scope: Scope,
                  is_global: bool = False) -> Scope:
    """Evaluate scope entries in order into a new child layer.

    Each entry sees the entries bound before it.
    """
    layer = scope.child(is_global=is_global)
    for name, value in entries:
        layer = layer.bind(name, value.resolve(layer))
    return layer


def render_template(text: str, scope: Scope) -> str:
    """Render file content containing ``${expr}`` placeholders."""
    return InterpolatedValue(text, split_template(text)).render(scope)
