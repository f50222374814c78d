"""Evaluation of parsed expressions over model trees and scopes.

``evaluate`` walks the syntax tree produced by the parser. Each node kind
has one handler; all handlers return node sets, so navigation over a
missing path simply yields the empty set and never raises.

Errors are raised only for things that cannot be given a meaning: unknown
functions, wrong arity, unknown meta attributes and arithmetic on values
of the wrong kind.
"""

import operator
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from opflow.exceptions import ExpressionError
from opflow.model import NodeKind, NodeRef, kind_of
from . import ast
from .functions import call_function
from .parser import parse_expression
from .scope import Scope
from .values import (
    EMPTY, NodeSet, is_number, is_truthy, same_value, single, unwrap,
)


def _unique(nodes: Iterable[NodeRef]) -> NodeSet:
    seen = set()
    result = []
    for node in nodes:
        ident = node.identity()
        if ident not in seen:
            seen.add(ident)
            result.append(node)
    return tuple(result)


def _meta(node: NodeRef, name: str) -> Any:
    if name == 'key':
        return node.key
    if name == 'index':
        return node.index
    if name == 'path':
        return str(node.path) if node.is_attached else None
    if name == 'kind':
        return node.kind.value
    raise ExpressionError(f"Unknown meta attribute '@{name}'")


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        if is_number(a) and is_number(b):
            return op(a, b)
        if isinstance(a, str) and isinstance(b, str):
            return op(a, b)
        return False
    return compare


def _starts_with(a: Any, b: Any) -> bool:
    return isinstance(a, str) and isinstance(b, str) and a.startswith(b)


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '==': same_value,
    '!=': lambda a, b: not same_value(a, b),
    '<': _ordered(operator.lt),
    '<=': _ordered(operator.le),
    '>': _ordered(operator.gt),
    '>=': _ordered(operator.ge),
    '^=': _starts_with,
}


def _arith(op: str, a: Any, b: Any) -> Any:
    if op == '+' and isinstance(a, str) and isinstance(b, str):
        return a + b
    if not (is_number(a) and is_number(b)):
        raise ExpressionError(
            f"Cannot apply '{op}' to {kind_of(a).value} and {kind_of(b).value}")
    if op == '+':
        return a + b
    if op == '-':
        return a - b
    if op == '*':
        return a * b
    if b == 0:
        raise ExpressionError(f"Division by zero in '{op}'")
    if op == '/':
        result = a / b
        return int(result) if result.is_integer() else result
    return a % b


class Evaluator:
    """Evaluates expressions against one scope.

    Attributes:
        scope: Variable scope used for ``$`` and ``$$`` lookups.
    """

    def __init__(self, scope: Scope):
        self.scope = scope
        self._handlers: Dict[type, Callable[[Any, Optional[NodeRef]], NodeSet]] = {
            ast.Literal: self._literal,
            ast.ArrayLiteral: self._array,
            ast.GlobalVar: lambda e, cur: self.scope.lookup_global(e.name),
            ast.LocalVar: lambda e, cur: self.scope.lookup(e.name),
            ast.Current: lambda e, cur: EMPTY if cur is None else (cur,),
            ast.Name: self._name,
            ast.Child: self._child,
            ast.Children: self._children,
            ast.Descendants: self._descendants,
            ast.Meta: self._meta,
            ast.Group: self._group,
            ast.Select: self._select,
            ast.Call: self._call,
            ast.Method: self._method,
            ast.Unary: self._unary,
            ast.Binary: self._binary,
            ast.Compare: self._compare,
            ast.And: self._and,
            ast.Or: self._or,
            ast.Not: self._not,
        }

    def default_current(self) -> Optional[NodeRef]:
        model = self.scope.lookup_global('model')
        return model[0] if model else None

    def eval(self, expr: ast.Expr, current: Optional[NodeRef]) -> NodeSet:
        handler = self._handlers.get(type(expr))
        if handler is None:
            raise ExpressionError(f"Unsupported expression node {expr!r}")
        return handler(expr, current)

    def _literal(self, expr: ast.Literal, current) -> NodeSet:
        return single(expr.value)

    def _array(self, expr: ast.ArrayLiteral, current) -> NodeSet:
        return single([unwrap(self.eval(item, current)) for item in expr.items])

    def _name(self, expr: ast.Name, current) -> NodeSet:
        if current is None:
            return EMPTY
        child = current.child(expr.name)
        return EMPTY if child is None else (child,)

    def _child(self, expr: ast.Child, current) -> NodeSet:
        result = []
        for node in self.eval(expr.base, current):
            child = node.child(expr.key)
            if child is not None:
                result.append(child)
        return tuple(result)

    def _children(self, expr: ast.Children, current) -> NodeSet:
        return tuple(child for node in self.eval(expr.base, current)
                     for child in node.children())

    def _descendants(self, expr: ast.Descendants, current) -> NodeSet:
        return _unique(desc for node in self.eval(expr.base, current)
                       for desc in node.descendants_or_self())

    def _meta(self, expr: ast.Meta, current) -> NodeSet:
        if expr.base is None:
            items = EMPTY if current is None else (current,)
        else:
            items = self.eval(expr.base, current)
        result = []
        for node in items:
            value = _meta(node, expr.name)
            if value is not None:
                result.append(NodeRef.detached(value))
        return tuple(result)

    def _group(self, expr: ast.Group, current) -> NodeSet:
        result = []
        for node in self.eval(expr.base, current):
            for name in expr.names:
                child = node.child(name)
                if child is not None:
                    result.append(child)
        return tuple(result)

    def _select(self, expr: ast.Select, current) -> NodeSet:
        result: List[NodeRef] = []
        for item in self.eval(expr.base, current):
            if item.kind is NodeKind.SEQUENCE:
                size = len(item.value)
                for child in item.children():
                    picked = self.eval(expr.predicate, child)
                    if len(picked) == 1 and is_number(picked[0].value):
                        wanted = picked[0].value
                        if wanted < 0:
                            wanted += size
                        if wanted == child.index:
                            result.append(child)
                    elif len(picked) == 1 and isinstance(picked[0].value, str):
                        if child.value == picked[0].value:
                            result.append(child)
                    elif is_truthy(picked):
                        result.append(child)
                continue
            picked = self.eval(expr.predicate, item)
            if len(picked) == 1 and isinstance(picked[0].value, str):
                child = item.child(picked[0].value)
                if child is not None:
                    result.append(child)
            elif len(picked) == 1 and is_number(picked[0].value):
                continue
            elif is_truthy(picked):
                result.append(item)
        return tuple(result)

    def _call(self, expr: ast.Call, current) -> NodeSet:
        args = [self.eval(arg, current) for arg in expr.args]
        return call_function(expr.name, args)

    def _method(self, expr: ast.Method, current) -> NodeSet:
        args = [self.eval(expr.base, current)]
        args.extend(self.eval(arg, current) for arg in expr.args)
        return call_function(expr.name, args)

    def _operand(self, expr: ast.Expr, current, op: str) -> Any:
        nodes = self.eval(expr, current)
        if not nodes:
            return _MISSING
        if len(nodes) > 1:
            raise ExpressionError(
                f"Operator '{op}' needs single values, got {len(nodes)}")
        return nodes[0].value

    def _unary(self, expr: ast.Unary, current) -> NodeSet:
        value = self._operand(expr.operand, current, expr.op)
        if value is _MISSING:
            return EMPTY
        if not is_number(value):
            raise ExpressionError(f"Cannot negate {kind_of(value).value}")
        return single(-value)

    def _binary(self, expr: ast.Binary, current) -> NodeSet:
        left = self._operand(expr.left, current, expr.op)
        right = self._operand(expr.right, current, expr.op)
        if left is _MISSING or right is _MISSING:
            return EMPTY
        return single(_arith(expr.op, left, right))

    def _compare(self, expr: ast.Compare, current) -> NodeSet:
        compare = _COMPARATORS[expr.op]
        left = self.eval(expr.left, current)
        right = self.eval(expr.right, current)
        return single(any(compare(a.value, b.value)
                          for a in left for b in right))

    def _and(self, expr: ast.And, current) -> NodeSet:
        left = self.eval(expr.left, current)
        if not is_truthy(left):
            return left
        return self.eval(expr.right, current)

    def _or(self, expr: ast.Or, current) -> NodeSet:
        left = self.eval(expr.left, current)
        if is_truthy(left):
            return left
        return self.eval(expr.right, current)

    def _not(self, expr: ast.Not, current) -> NodeSet:
        return single(not is_truthy(self.eval(expr.operand, current)))


_MISSING = object()


def evaluate(expr: Union[str, ast.Expr], scope: Scope,
             current: Optional[NodeRef] = None) -> NodeSet:
    """Evaluate an expression.

    Args:
        expr: Expression text (without ``${ }``) or a parsed expression.
        scope: Variable scope.
        current: Item bound to ``@``; defaults to the root of ``$$model``.

    Returns:
        The resulting node set (possibly empty).

    Raises:
        ExpressionSyntaxError: If ``expr`` text cannot be parsed.
        ExpressionError: If the expression cannot be evaluated.
    """
    if isinstance(expr, str):
        expr = parse_expression(expr)
    evaluator = Evaluator(scope)
    if current is None:
        current = evaluator.default_current()
    return evaluator.eval(expr, current)
