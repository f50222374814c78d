"""Index implementations for the two kinds of watch entries.

- PathIndex: resolved model paths in a PathTrie; O(k) lookup per change
  (k = path depth).
- GlobIndex: compiled file globs; linear scan over the registered globs
  per touched file.
"""

import re
from typing import Dict, Generic, List, Pattern, Tuple, TypeVar

from opflow.model import ChangeKind, ModelPath
from .trie import PathTrie

T = TypeVar('T')


class PathIndex(Generic[T]):
    """Resolved watch paths of one revision.

    A change fires a registered path when the change is at that path, or,
    for Added and Removed changes, when the registered path lies inside
    the subtree that appeared or disappeared.
    """

    def __init__(self):
        self._trie: PathTrie[T] = PathTrie()

    def register(self, path: ModelPath, value: T) -> None:
        """Register a resolved watch path.

        Args:
            path: Path of a node the watch expression resolved to.
            value: Watch entry owning the path.
        """
        self._trie.insert(path, value)

    def find(self, path: ModelPath, kind: ChangeKind) -> List[T]:
        """Find watch entries touched by a change.

        Args:
            path: Path of the change.
            kind: Kind of the change.

        Returns:
            Registered values, possibly with repeats when an entry resolved
            to several paths inside one subtree.
        """
        if kind is ChangeKind.MODIFIED:
            return self._trie.find_exact(path)
        return self._trie.find_beneath(path)

    def __len__(self) -> int:
        return len(self._trie)


def compile_glob(pattern: str) -> Pattern:
    """Translate a file glob into a regular expression.

    Supported syntax: ``*`` (any characters except ``/``), ``**`` (any
    number of directories), ``?`` (one character except ``/``) and
    ``[...]`` character classes (``[!...]`` negated).
    """
    parts = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == '*':
            if pattern.startswith('**', i):
                if pattern.startswith('**/', i):
                    parts.append('(?:.*/)?')
                    i += 3
                else:
                    parts.append('.*')
                    i += 2
                continue
            parts.append('[^/]*')
        elif ch == '?':
            parts.append('[^/]')
        elif ch == '[':
            end = pattern.find(']', i + 1)
            if end < 0:
                parts.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith('!'):
                    body = '^' + body[1:]
                parts.append('[' + body.replace('\\', '\\\\') + ']')
                i = end + 1
                continue
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.compile('^' + ''.join(parts) + '$')


def normalize_file(path: str) -> str:
    """Normalize a touched file path for glob matching."""
    path = path.replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    return path.lstrip('/')


class GlobIndex(Generic[T]):
    """Linear scan over compiled file globs."""

    def __init__(self):
        self._globs: List[Tuple[Pattern, str, T]] = []
        self._compiled: Dict[str, Pattern] = {}

    def register(self, pattern: str, value: T) -> None:
        """Register a glob with its owning value."""
        regex = self._compiled.get(pattern)
        if regex is None:
            regex = self._compiled[pattern] = compile_glob(normalize_file(pattern))
        self._globs.append((regex, pattern, value))

    def find_all(self, file_path: str) -> List[T]:
        """Find every value whose glob matches ``file_path``."""
        normalized = normalize_file(file_path)
        return [value for regex, _, value in self._globs
                if regex.match(normalized)]

    def __len__(self) -> int:
        return len(self._globs)
