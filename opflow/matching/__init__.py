"""Watch matching for change sets.

This module selects the procs a change set triggers:

- PathIndex: O(k) trie lookup of resolved watch paths (k = path depth)
- GlobIndex: linear scan of ``watch_file`` globs over touched files
- WatchMatcher: resolves watch expressions per revision and produces one
  Trigger per triggered proc, in declaration order

Example:
    from opflow.matching import WatchMatcher

    matcher = WatchMatcher(registry.procs())
    triggers = matcher.match(changeset, old_scope, new_scope)
"""

from .protocols import ChangeMask, FileWatchSpec, WatchSpec, Watcher
from .trie import PathTrie, TrieNode
from .indexes import GlobIndex, PathIndex, compile_glob
from .engine import Trigger, WatchMatcher

__all__ = [
    # Protocols and declarations
    'ChangeMask',
    'WatchSpec',
    'FileWatchSpec',
    'Watcher',
    # Data structures
    'PathTrie',
    'TrieNode',
    # Indexes
    'PathIndex',
    'GlobIndex',
    'compile_glob',
    # Main engine
    'Trigger',
    'WatchMatcher',
]
