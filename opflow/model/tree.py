"""Versioned, addressable model tree.

A ModelTree wraps an ordered document made of mappings, sequences and
scalars. Trees are validated on construction (no cycles, only addressable
node types) and never mutated afterwards; edits go through a ModelEditor
working copy whose ``commit`` produces a new ModelRevision.

NodeRef is an ownership-free reference to one node of a tree. The
expression evaluator works exclusively on NodeRefs; values computed by
expressions are wrapped in *detached* NodeRefs that carry no tree path.

Example:
    tree = ModelTree({'hosts': {'zeus': {'packages': ['vim', 'git']}}})
    node = tree.node(ModelPath.parse('hosts.zeus.packages[1]'))
    node.value   # 'git'
    str(node.path)  # 'hosts.zeus.packages[1]'
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import yaml

from opflow.exceptions import MalformedModel
from .path import ModelPath, Segment


class NodeKind(Enum):
    """Shape of a node."""
    NULL = 'null'
    BOOL = 'bool'
    NUMBER = 'number'
    STRING = 'string'
    SEQUENCE = 'sequence'
    MAPPING = 'mapping'

    @property
    def is_container(self) -> bool:
        return self in (NodeKind.SEQUENCE, NodeKind.MAPPING)


def kind_of(value: Any) -> NodeKind:
    """Classify a plain value.

    Raises:
        MalformedModel: If the value is not an addressable node type.
    """
    if value is None:
        return NodeKind.NULL
    if isinstance(value, bool):
        return NodeKind.BOOL
    if isinstance(value, (int, float)):
        return NodeKind.NUMBER
    if isinstance(value, str):
        return NodeKind.STRING
    if isinstance(value, (list, tuple)):
        return NodeKind.SEQUENCE
    if isinstance(value, dict):
        return NodeKind.MAPPING
    raise MalformedModel(f"Unaddressable node type {type(value).__name__}")


def validate_tree(value: Any) -> None:
    """Check that ``value`` is an addressable, acyclic document.

    Shared subtrees (YAML anchors) are allowed; only a container that is
    its own ancestor is rejected.

    Raises:
        MalformedModel: On cycles, unsupported types or non-string keys.
    """
    # explicit stack: (value, path, ancestor ids)
    stack = [(value, ModelPath(), frozenset())]
    while stack:
        node, path, ancestors = stack.pop()
        try:
            kind = kind_of(node)
        except MalformedModel as e:
            raise MalformedModel(str(e), str(path)) from None
        if not kind.is_container:
            continue
        if id(node) in ancestors:
            raise MalformedModel("Cyclic reference", str(path))
        inner = ancestors | {id(node)}
        if kind is NodeKind.MAPPING:
            for key, child in node.items():
                if not isinstance(key, str):
                    raise MalformedModel(
                        f"Mapping key {key!r} is not a string", str(path))
                stack.append((child, path.child(key), inner))
        else:
            for index, child in enumerate(node):
                stack.append((child, path.child(index), inner))


def _thaw(value: Any) -> Any:
    """Deep copy into plain dict/list containers."""
    if isinstance(value, dict):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value


class ModelTree:
    """Immutable hierarchical document."""

    def __init__(self, data: Any = None):
        validate_tree(data)
        self._root = _thaw(data if data is not None else {})

    @classmethod
    def from_yaml(cls, text: str) -> 'ModelTree':
        """Build a tree from YAML text."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MalformedModel(f"Invalid YAML: {e}") from e
        return cls(data)

    @property
    def root(self) -> 'NodeRef':
        return NodeRef(self, ModelPath(), self._root)

    def to_data(self) -> Any:
        """Return a deep copy of the underlying document."""
        return copy.deepcopy(self._root)

    def get(self, path: Union[ModelPath, str], default: Any = None) -> Any:
        """Return the plain value at ``path`` or ``default``."""
        node = self.node(path)
        return default if node is None else node.value

    def node(self, path: Union[ModelPath, str]) -> Optional['NodeRef']:
        """Return a NodeRef for ``path`` or None if it does not exist."""
        if isinstance(path, str):
            path = ModelPath.parse(path)
        value = self._root
        for seg in path:
            value = _step(value, seg)
            if value is _MISSING:
                return None
        return NodeRef(self, path, value)

    def contains(self, path: Union[ModelPath, str]) -> bool:
        return self.node(path) is not None

    def edit(self) -> 'ModelEditor':
        """Open a mutable working copy of this tree."""
        return ModelEditor(self.to_data())

    def __eq__(self, other) -> bool:
        if isinstance(other, ModelTree):
            return self._root == other._root
        return NotImplemented

    def __repr__(self) -> str:
        return f'ModelTree({self._root!r})'


_MISSING = object()


def _step(value: Any, seg: Segment) -> Any:
    if isinstance(seg, int):
        if isinstance(value, list) and -len(value) <= seg < len(value):
            return value[seg]
        return _MISSING
    if isinstance(value, dict) and seg in value:
        return value[seg]
    return _MISSING


class NodeRef:
    """Reference to a node in a tree, or to a detached computed value.

    Attributes:
        tree: Owning tree, None for detached values.
        path: Address inside ``tree`` (relative to the value for detached
              refs).
        value: The plain value of the node.
    """

    __slots__ = ('tree', 'path', 'value')

    def __init__(self, tree: Optional[ModelTree], path: ModelPath, value: Any):
        self.tree = tree
        self.path = path
        self.value = value

    @classmethod
    def detached(cls, value: Any) -> 'NodeRef':
        """Wrap a computed value that does not live in any tree."""
        return cls(None, ModelPath(), value)

    @property
    def is_attached(self) -> bool:
        return self.tree is not None

    @property
    def kind(self) -> NodeKind:
        return kind_of(self.value)

    @property
    def key(self) -> Optional[str]:
        """Mapping key under which this node lives, if any."""
        if self.path.is_root():
            return None
        last = self.path.last
        return last if isinstance(last, str) else None

    @property
    def index(self) -> Optional[int]:
        """Sequence index of this node, if any."""
        if self.path.is_root():
            return None
        last = self.path.last
        return last if isinstance(last, int) else None

    def _make(self, seg: Segment, value: Any) -> 'NodeRef':
        return NodeRef(self.tree, self.path.child(seg), value)

    def child(self, seg: Segment) -> Optional['NodeRef']:
        """Return the child at ``seg`` or None."""
        value = _step(self.value, seg)
        if value is _MISSING:
            return None
        if isinstance(seg, int) and seg < 0:
            seg += len(self.value)
        return self._make(seg, value)

    def children(self) -> Iterator['NodeRef']:
        """Yield children in document order (no-op for scalars)."""
        if isinstance(self.value, dict):
            for k, v in self.value.items():
                yield self._make(k, v)
        elif isinstance(self.value, (list, tuple)):
            for i, v in enumerate(self.value):
                yield self._make(i, v)

    def descendants_or_self(self) -> Iterator['NodeRef']:
        """Yield this node and every node beneath it, in pre-order."""
        yield self
        for c in self.children():
            yield from c.descendants_or_self()

    def identity(self):
        """Hashable identity: the path for attached nodes, the object id
        otherwise."""
        if self.tree is not None:
            return (id(self.tree), self.path)
        return ('detached', id(self))

    def __eq__(self, other) -> bool:
        if isinstance(other, NodeRef):
            return (self.tree is other.tree and self.path == other.path
                    and self.value == other.value)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((id(self.tree), self.path))

    def __repr__(self) -> str:
        if self.tree is None:
            return f'NodeRef(detached, {self.value!r})'
        return f'NodeRef({str(self.path)!r})'


class ModelEditor:
    """Mutable working copy of a ModelTree."""

    def __init__(self, data: Any):
        self._data = data

    def _parent(self, path: ModelPath) -> Any:
        if path.is_root():
            raise KeyError("The root node has no parent")
        value = self._data
        for seg in path.parent:
            value = _step(value, seg)
            if value is _MISSING:
                raise KeyError(f"No node at '{path.parent}'")
        return value

    def set(self, path: Union[ModelPath, str], value: Any) -> 'ModelEditor':
        """Set (or create) the node at ``path``.

        A sequence index equal to the sequence length appends.
        """
        if isinstance(path, str):
            path = ModelPath.parse(path)
        value = _thaw(value)
        if path.is_root():
            self._data = value
            return self
        parent = self._parent(path)
        seg = path.last
        if isinstance(seg, int):
            if not isinstance(parent, list):
                raise KeyError(f"'{path.parent}' is not a sequence")
            if seg == len(parent):
                parent.append(value)
            else:
                parent[seg] = value
        else:
            if not isinstance(parent, dict):
                raise KeyError(f"'{path.parent}' is not a mapping")
            parent[seg] = value
        return self

    def append(self, path: Union[ModelPath, str], value: Any) -> 'ModelEditor':
        """Append ``value`` to the sequence at ``path``."""
        if isinstance(path, str):
            path = ModelPath.parse(path)
        target = self._data
        for seg in path:
            target = _step(target, seg)
            if target is _MISSING:
                raise KeyError(f"No node at '{path}'")
        if not isinstance(target, list):
            raise KeyError(f"'{path}' is not a sequence")
        target.append(_thaw(value))
        return self

    def remove(self, path: Union[ModelPath, str]) -> 'ModelEditor':
        """Remove the node at ``path``."""
        if isinstance(path, str):
            path = ModelPath.parse(path)
        parent = self._parent(path)
        seg = path.last
        if _step(parent, seg) is _MISSING:
            raise KeyError(f"No node at '{path}'")
        del parent[seg]
        return self

    def to_tree(self) -> ModelTree:
        return ModelTree(self._data)

    def commit(self, revision_id: str) -> 'ModelRevision':
        """Freeze the working copy into a new revision."""
        return ModelRevision(revision_id, self.to_tree())


@dataclass(frozen=True)
class ModelRevision:
    """Immutable snapshot of the model identified by a revision id."""

    id: str
    tree: ModelTree = field(compare=False)


def load_model(path: Union[str, Path]) -> ModelTree:
    """Load a model document from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    return ModelTree.from_yaml(path.read_text())
