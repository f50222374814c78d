"""Structural diff between two model revisions.

The diff is complete (every differing leaf and every structural add or
remove is reported) and minimal (no reported path lies beneath another
reported path):

- a key or index present only in the new tree is one ``Added`` entry at
  that node, carrying the whole subtree as its value;
- a key or index present only in the old tree is one ``Removed`` entry;
- ``Modified`` is reported for differing scalars, and for nodes whose
  shape changed (mapping, sequence or scalar), in which case the subtree
  is not descended into.

Sequences are compared index by index: a longer new sequence reports its
tail as ``Added``, a shorter one reports the old tail as ``Removed``, and a
reordering shows up as per-index changes.

Example:
    old = ModelTree({'hosts': {'zeus': {'packages': ['vim']}}})
    new = ModelTree({'hosts': {'zeus': {'packages': ['vim', 'curl']}}})
    changes = diff_trees(old, new)
    changes[0]   # Change(ADDED, 'hosts.zeus.packages[1]', new='curl')
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .path import ModelPath
from .tree import ModelTree, NodeKind, kind_of


class ChangeKind(Enum):
    """Kind of a change, with the operator used by watch declarations."""
    ADDED = '+'
    REMOVED = '-'
    MODIFIED = '*'

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Change:
    """A single structural difference.

    Attributes:
        kind: Added, Removed or Modified.
        path: Address of the changed node.
        old_value: Value in the old tree (None for Added).
        new_value: Value in the new tree (None for Removed).
    """
    kind: ChangeKind
    path: ModelPath
    old_value: Any = None
    new_value: Any = None

    @classmethod
    def added(cls, path: ModelPath, value: Any) -> 'Change':
        return cls(ChangeKind.ADDED, path, None, value)

    @classmethod
    def removed(cls, path: ModelPath, value: Any) -> 'Change':
        return cls(ChangeKind.REMOVED, path, value, None)

    @classmethod
    def modified(cls, path: ModelPath, old_value: Any, new_value: Any) -> 'Change':
        return cls(ChangeKind.MODIFIED, path, old_value, new_value)

    @property
    def old_path(self) -> Optional[ModelPath]:
        """Path in the old tree, None when the node was added."""
        return None if self.kind is ChangeKind.ADDED else self.path

    @property
    def new_path(self) -> Optional[ModelPath]:
        """Path in the new tree, None when the node was removed."""
        return None if self.kind is ChangeKind.REMOVED else self.path

    def to_record(self) -> dict:
        """Render as a plain mapping (exposed as ``$$model_changes``)."""
        return {
            'kind': self.kind.label,
            'op': self.kind.value,
            'path': str(self.path),
            'old_path': None if self.old_path is None else str(self.old_path),
            'new_path': None if self.new_path is None else str(self.new_path),
            'old_value': copy.deepcopy(self.old_value),
            'new_value': copy.deepcopy(self.new_value),
        }

    def __repr__(self) -> str:
        if self.kind is ChangeKind.ADDED:
            detail = f'new={self.new_value!r}'
        elif self.kind is ChangeKind.REMOVED:
            detail = f'old={self.old_value!r}'
        else:
            detail = f'old={self.old_value!r}, new={self.new_value!r}'
        return f"Change({self.kind.name}, '{self.path}', {detail})"


@dataclass(frozen=True)
class ChangeSet:
    """Ordered changes between two revisions plus the files touched on disk
    in the same transaction."""

    changes: Tuple[Change, ...] = ()
    touched_files: FrozenSet[str] = frozenset()
    old: Optional[ModelTree] = field(default=None, compare=False, repr=False)
    new: Optional[ModelTree] = field(default=None, compare=False, repr=False)

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __getitem__(self, index: int) -> Change:
        return self.changes[index]

    @property
    def is_empty(self) -> bool:
        return not self.changes and not self.touched_files

    def of_kind(self, kind: ChangeKind) -> List[Change]:
        return [c for c in self.changes if c.kind is kind]

    def records(self) -> List[dict]:
        return [c.to_record() for c in self.changes]


def _same_scalar(a: Any, b: Any) -> bool:
    # bool and number are distinct kinds even though True == 1
    return kind_of(a) is kind_of(b) and a == b


def _walk(old: Any, new: Any, path: ModelPath, out: List[Change]) -> None:
    old_kind = kind_of(old)
    new_kind = kind_of(new)

    if old_kind is not new_kind and (old_kind.is_container or new_kind.is_container):
        out.append(Change.modified(path, copy.deepcopy(old), copy.deepcopy(new)))
        return

    if new_kind is NodeKind.MAPPING:
        for key, new_child in new.items():
            child_path = path.child(key)
            if key in old:
                _walk(old[key], new_child, child_path, out)
            else:
                out.append(Change.added(child_path, copy.deepcopy(new_child)))
        for key, old_child in old.items():
            if key not in new:
                out.append(Change.removed(path.child(key), copy.deepcopy(old_child)))
        return

    if new_kind is NodeKind.SEQUENCE:
        common = min(len(old), len(new))
        for i in range(common):
            _walk(old[i], new[i], path.child(i), out)
        for i in range(common, len(new)):
            out.append(Change.added(path.child(i), copy.deepcopy(new[i])))
        for i in range(common, len(old)):
            out.append(Change.removed(path.child(i), copy.deepcopy(old[i])))
        return

    if not _same_scalar(old, new):
        out.append(Change.modified(path, old, new))


def diff_trees(old: ModelTree, new: ModelTree,
               touched_files: Iterable[str] = ()) -> ChangeSet:
    """Compute the change set turning ``old`` into ``new``.

    Both trees were validated on construction, so cyclic or unaddressable
    documents have already been rejected with MalformedModel.

    Args:
        old: Previous revision.
        new: Current revision.
        touched_files: Paths of files changed on disk in the same
                       transaction (relative to the model root).

    Returns:
        ChangeSet in deterministic pre-order.
    """
    changes: List[Change] = []
    _walk(old.root.value, new.root.value, ModelPath(), changes)
    return ChangeSet(
        changes=tuple(changes),
        touched_files=frozenset(touched_files),
        old=old,
        new=new,
    )


def apply_changes(tree: ModelTree, changeset: Iterable[Change]) -> ModelTree:
    """Replay a change set onto a copy of ``tree``.

    Added and Modified entries are applied in order, Removed entries in
    reverse order so that sequence tails shrink from the end.

    Returns:
        The resulting new tree; ``tree`` itself is untouched.
    """
    editor = tree.edit()
    changes = list(changeset)
    for change in changes:
        if change.kind is not ChangeKind.REMOVED:
            editor.set(change.path, change.new_value)
    for change in reversed(changes):
        if change.kind is ChangeKind.REMOVED:
            editor.remove(change.path)
    return editor.to_tree()
