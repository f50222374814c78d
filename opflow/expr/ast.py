"""Expression syntax tree."""

from dataclasses import dataclass
from typing import Any, Tuple


class Expr:
    """Base class of all expression nodes."""


@dataclass(frozen=True)
class Literal(Expr):
    value: Any


@dataclass(frozen=True)
class ArrayLiteral(Expr):
    items: Tuple[Expr, ...]


@dataclass(frozen=True)
class GlobalVar(Expr):
    """``$$name``"""
    name: str


@dataclass(frozen=True)
class LocalVar(Expr):
    """``$name``"""
    name: str


@dataclass(frozen=True)
class Current(Expr):
    """``@``"""


@dataclass(frozen=True)
class Name(Expr):
    """Bare name: child of the current item."""
    name: str


@dataclass(frozen=True)
class Child(Expr):
    base: Expr
    key: str


@dataclass(frozen=True)
class Children(Expr):
    """``.*`` or ``[*]``"""
    base: Expr


@dataclass(frozen=True)
class Descendants(Expr):
    """``.**``, descendant-or-self"""
    base: Expr


@dataclass(frozen=True)
class Meta(Expr):
    """``.@key``; ``base`` is None for a leading ``@key``."""
    base: Any
    name: str


@dataclass(frozen=True)
class Group(Expr):
    """``.(a,b,c)``"""
    base: Expr
    names: Tuple[str, ...]


@dataclass(frozen=True)
class Select(Expr):
    """``base[expr]``"""
    base: Expr
    predicate: Expr


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...]


@dataclass(frozen=True)
class Method(Expr):
    """``base.name(args)``, sugar for ``name(base, args)``"""
    base: Expr
    name: str
    args: Tuple[Expr, ...]


@dataclass(frozen=True)
class Unary(Expr):
    op: str
    operand: Expr


@dataclass(frozen=True)
class Binary(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Compare(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class And(Expr):
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Or(Expr):
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr
