"""Protocols, enums and declarations for the watch matcher.

This module defines the watch declarations a proc carries and the
abstraction a proc must implement to be considered by the matcher.
"""

from dataclasses import dataclass, field
from enum import Flag
from typing import Optional, Protocol, Sequence, runtime_checkable

from opflow.expr import parse_expression
from opflow.expr.ast import Expr
from opflow.model import ChangeKind


class ChangeMask(Flag):
    """Set of change kinds a watch entry reacts to.

    Parsed from the operator strings used in declarations: ``+`` (added),
    ``-`` (removed), ``*`` (modified), any combination such as ``+-*``,
    or ``~`` for every kind.
    """
    NONE = 0
    ADDED = 1
    REMOVED = 2
    MODIFIED = 4
    ALL = ADDED | REMOVED | MODIFIED

    @classmethod
    def parse(cls, text: str) -> 'ChangeMask':
        """Parse an operator string.

        Raises:
            ValueError: If the string is empty or holds unknown operators.
        """
        text = str(text).strip()
        if not text:
            raise ValueError("Empty change operator")
        mask = cls.NONE
        for ch in text:
            if ch == '~':
                mask |= cls.ALL
            elif ch == '+':
                mask |= cls.ADDED
            elif ch == '-':
                mask |= cls.REMOVED
            elif ch == '*':
                mask |= cls.MODIFIED
            elif not ch.isspace():
                raise ValueError(f"Unknown change operator {ch!r} in {text!r}")
        return mask

    def allows(self, kind: ChangeKind) -> bool:
        return bool(self & _KIND_MASKS[kind])

    @property
    def operators(self) -> str:
        return ''.join(op for op, flag in (('+', ChangeMask.ADDED),
                                           ('-', ChangeMask.REMOVED),
                                           ('*', ChangeMask.MODIFIED))
                       if self & flag)


_KIND_MASKS = {
    ChangeKind.ADDED: ChangeMask.ADDED,
    ChangeKind.REMOVED: ChangeMask.REMOVED,
    ChangeKind.MODIFIED: ChangeMask.MODIFIED,
}


def _strip_delimiters(text: str) -> str:
    text = text.strip()
    if text.startswith('${') and text.endswith('}'):
        return text[2:-1]
    return text


@dataclass(frozen=True)
class WatchSpec:
    """One ``watch`` entry: a path expression and the kinds it reacts to.

    Attributes:
        pattern: Expression text, e.g. ``$$hosts.packages[*]``.
        mask: Change kinds that fire the entry.
        expr: Parsed expression.
    """
    pattern: str
    mask: ChangeMask
    expr: Optional[Expr] = field(default=None, compare=False, repr=False)

    @classmethod
    def parse(cls, pattern: str, operators: str) -> 'WatchSpec':
        """Build a watch entry from its declaration.

        Raises:
            ExpressionSyntaxError: If the pattern is not a valid expression.
            ValueError: If the operators are invalid.
        """
        expr = parse_expression(_strip_delimiters(str(pattern)))
        return cls(str(pattern), ChangeMask.parse(operators), expr)


@dataclass(frozen=True)
class FileWatchSpec:
    """One ``watch_file`` entry: a glob relative to the model root.

    Any touched file matching the glob triggers; the marker is kept for
    reporting only.
    """
    pattern: str
    marker: str = '~'


@runtime_checkable
class Watcher(Protocol):
    """Protocol for objects the watch matcher can trigger.

    Procs implement it; only watchers reporting ``is_triggerable`` are
    considered for a change set.
    """

    name: str

    @property
    def is_triggerable(self) -> bool:
        ...

    @property
    def watches(self) -> Sequence[WatchSpec]:
        ...

    @property
    def file_watches(self) -> Sequence[FileWatchSpec]:
        ...
