"""Model store interface.

Revision storage (commits, history, working directories) lives outside the
engine. The engine only needs the ModelStore protocol below; the in-memory
implementation serves tests and embedding callers that manage revisions
themselves.
"""

from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from .tree import ModelRevision, ModelTree


@runtime_checkable
class ModelStore(Protocol):
    """Source of model revisions consumed by the engine."""

    @property
    def current_id(self) -> str:
        ...

    @property
    def previous_id(self) -> str:
        ...

    def get_revision(self, revision_id: str) -> ModelTree:
        """Return the tree of a committed revision."""
        ...

    def current_and_previous(self) -> Tuple[ModelTree, ModelTree]:
        """Return ``(old, new)``: the previous and the current revision."""
        ...

    def touched_files(self, revision_range: Tuple[str, str]) -> FrozenSet[str]:
        """Return files changed on disk between two revisions."""
        ...


class InMemoryModelStore:
    """ModelStore keeping an ordered list of revisions in memory."""

    def __init__(self, initial: Optional[ModelTree] = None,
                 revision_id: str = 'r0'):
        self._revisions: Dict[str, ModelRevision] = {}
        self._order: List[str] = []
        self._files: Dict[str, FrozenSet[str]] = {}
        self.commit(initial if initial is not None else ModelTree({}),
                    revision_id)

    def commit(self, tree: ModelTree, revision_id: Optional[str] = None,
               touched_files: Iterable[str] = ()) -> ModelRevision:
        """Store ``tree`` as the new current revision.

        Raises:
            ValueError: If the revision id is already used.
        """
        if revision_id is None:
            revision_id = f'r{len(self._order)}'
        if revision_id in self._revisions:
            raise ValueError(f"Duplicate revision id: {revision_id}")
        revision = ModelRevision(revision_id, tree)
        self._revisions[revision_id] = revision
        self._order.append(revision_id)
        self._files[revision_id] = frozenset(touched_files)
        return revision

    def get_revision(self, revision_id: str) -> ModelTree:
        try:
            return self._revisions[revision_id].tree
        except KeyError:
            raise KeyError(f"Unknown revision: {revision_id}") from None

    @property
    def current_id(self) -> str:
        return self._order[-1]

    @property
    def previous_id(self) -> str:
        return self._order[-2] if len(self._order) > 1 else self._order[-1]

    def current_and_previous(self) -> Tuple[ModelTree, ModelTree]:
        return (self.get_revision(self.previous_id),
                self.get_revision(self.current_id))

    def touched_files(self, revision_range: Tuple[str, str]) -> FrozenSet[str]:
        start, end = revision_range
        try:
            lo = self._order.index(start)
            hi = self._order.index(end)
        except ValueError:
            raise KeyError(f"Unknown revision range: {start}..{end}") from None
        files: FrozenSet[str] = frozenset()
        for rev in self._order[lo + 1:hi + 1]:
            files |= self._files[rev]
        return files
