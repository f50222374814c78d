"""Path trie keyed by model path segments.

Each trie node corresponds to one model path; values registered at a path
are kept in insertion order. The matcher uses it to answer two questions
in O(k) (k = path depth) plus the size of the answer:

- which values are registered exactly at a path (Modified changes);
- which values are registered at or beneath a path (a subtree that was
  Added or Removed as a whole).
"""

from dataclasses import dataclass, field
from typing import Dict, Generic, Iterator, List, Optional, TypeVar

from opflow.model import ModelPath
from opflow.model.path import Segment

T = TypeVar('T')


@dataclass
class TrieNode(Generic[T]):
    """Node in a path trie.

    Attributes:
        children: Child nodes keyed by path segment.
        values: Values registered at exactly this path.
    """
    children: Dict[Segment, 'TrieNode[T]'] = field(default_factory=dict)
    values: List[T] = field(default_factory=list)

    def walk(self) -> Iterator['TrieNode[T]']:
        yield self
        for child in self.children.values():
            yield from child.walk()


class PathTrie(Generic[T]):
    """Trie over ModelPath segments.

    Example:
        trie = PathTrie()
        trie.insert(ModelPath.parse('hosts.zeus.packages[2]'), 'yum_update_add')

        trie.find_exact(ModelPath.parse('hosts.zeus.packages[2]'))
        # ['yum_update_add']
        trie.find_beneath(ModelPath.parse('hosts.zeus'))
        # ['yum_update_add']
        trie.find_beneath(ModelPath.parse('hosts.hera'))
        # []
    """

    def __init__(self):
        self._root: TrieNode[T] = TrieNode()
        self._size = 0

    def insert(self, path: ModelPath, value: T) -> None:
        """Register ``value`` at ``path``."""
        node = self._root
        for seg in path:
            node = node.children.setdefault(seg, TrieNode())
        node.values.append(value)
        self._size += 1

    def _node(self, path: ModelPath) -> Optional[TrieNode[T]]:
        node = self._root
        for seg in path:
            node = node.children.get(seg)
            if node is None:
                return None
        return node

    def find_exact(self, path: ModelPath) -> List[T]:
        """Values registered exactly at ``path``."""
        node = self._node(path)
        return list(node.values) if node is not None else []

    def find_beneath(self, path: ModelPath) -> List[T]:
        """Values registered at ``path`` or at any path beneath it."""
        node = self._node(path)
        if node is None:
            return []
        return [value for sub in node.walk() for value in sub.values]

    def __len__(self) -> int:
        return self._size
