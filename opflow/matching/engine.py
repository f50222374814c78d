"""Watch matcher: decides which procs a change set triggers.

Watch patterns are expressions, so they are resolved against the model
before matching: entries reacting to removals against the old revision,
entries reacting to additions or modifications against the new revision.
The resolved node paths go into one PathIndex per revision; every change
is then looked up in the index of the revision it refers to.

File watches are globs checked against the change set's touched files.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from opflow.expr import Scope, evaluate
from opflow.model import Change, ChangeKind, ChangeSet
from .indexes import GlobIndex, PathIndex
from .protocols import ChangeMask, WatchSpec, Watcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    """A proc selected for a change set.

    Attributes:
        proc: The triggered watcher (a Proc).
        changes: Matched changes, in change-set order.
        files: Matched touched files, sorted.
    """
    proc: Watcher
    changes: Tuple[Change, ...] = ()
    files: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.proc.name

    def records(self) -> List[dict]:
        """Matched changes rendered for ``$$model_changes``."""
        return [c.to_record() for c in self.changes]


class WatchMatcher:
    """Matches change sets against the watches of registered procs.

    Example:
        matcher = WatchMatcher(registry.procs())
        old_scope = revision_scope(old, procs=registry.nodes())
        new_scope = revision_scope(new, old, procs=registry.nodes())

        for trigger in matcher.match(changeset, old_scope, new_scope):
            print(trigger.name, trigger.changes)
    """

    def __init__(self, watchers: Sequence[Watcher]):
        """Initialize with watchers in declaration order.

        Args:
            watchers: Procs to consider; non-triggerable ones are ignored.
        """
        self._watchers = [w for w in watchers if w.is_triggerable]
        self._globs: GlobIndex[int] = GlobIndex()
        for position, watcher in enumerate(self._watchers):
            for file_watch in watcher.file_watches:
                self._globs.register(file_watch.pattern, position)

    @property
    def watchers(self) -> List[Watcher]:
        return list(self._watchers)

    def _index(self, scope: Scope,
               wanted: ChangeMask) -> PathIndex[Tuple[int, WatchSpec]]:
        index: PathIndex[Tuple[int, WatchSpec]] = PathIndex()
        for position, watcher in enumerate(self._watchers):
            for spec in watcher.watches:
                if not spec.mask & wanted:
                    continue
                for node in evaluate(spec.expr, scope):
                    if node.is_attached:
                        index.register(node.path, (position, spec))
        return index

    def match(self, changeset: ChangeSet, old_scope: Scope,
              new_scope: Scope) -> List[Trigger]:
        """Return triggered procs for a change set, in declaration order.

        Args:
            changeset: Changes and touched files of one transaction.
            old_scope: Globals of the old revision (resolves ``-`` entries).
            new_scope: Globals of the new revision (resolves ``+``/``*``).

        Returns:
            One Trigger per triggered proc; a proc appears at most once.

        Raises:
            ExpressionError: If a watch pattern cannot be evaluated.
        """
        matched: Dict[int, List[Change]] = {}
        if changeset.changes and self._watchers:
            indexes = {
                ChangeKind.REMOVED: self._index(old_scope, ChangeMask.REMOVED),
            }
            indexes[ChangeKind.ADDED] = indexes[ChangeKind.MODIFIED] = self._index(
                new_scope, ChangeMask.ADDED | ChangeMask.MODIFIED)
            for change in changeset:
                hits = indexes[change.kind].find(change.path, change.kind)
                for position, spec in hits:
                    if not spec.mask.allows(change.kind):
                        continue
                    changes = matched.setdefault(position, [])
                    if not changes or changes[-1] is not change:
                        changes.append(change)

        files: Dict[int, List[str]] = {}
        for file_path in sorted(changeset.touched_files):
            for position in self._globs.find_all(file_path):
                hit = files.setdefault(position, [])
                if file_path not in hit:
                    hit.append(file_path)

        triggers = []
        for position, watcher in enumerate(self._watchers):
            if position in matched or position in files:
                trigger = Trigger(watcher, tuple(matched.get(position, ())),
                                  tuple(files.get(position, ())))
                logger.debug("Proc '%s' triggered by %d change(s), %d file(s)",
                             watcher.name, len(trigger.changes), len(trigger.files))
                triggers.append(trigger)
        return triggers
