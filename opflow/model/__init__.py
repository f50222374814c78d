"""Versioned model tree and structural diffing.

Example:
    from opflow.model import ModelTree, diff_trees

    old = ModelTree({'hosts': {'zeus': {'packages': ['vim']}}})
    new = old.edit().append('hosts.zeus.packages', 'curl').to_tree()

    for change in diff_trees(old, new):
        print(change.kind.value, change.path)   # + hosts.zeus.packages[1]
"""

from .path import ModelPath
from .tree import (
    ModelTree, ModelEditor, ModelRevision, NodeRef, NodeKind, kind_of,
    load_model, validate_tree,
)
from .diff import Change, ChangeKind, ChangeSet, diff_trees, apply_changes
from .store import ModelStore, InMemoryModelStore

__all__ = [
    # Addressing
    'ModelPath',
    'NodeRef',
    'NodeKind',
    'kind_of',
    # Trees
    'ModelTree',
    'ModelEditor',
    'ModelRevision',
    'load_model',
    'validate_tree',
    # Diffing
    'Change',
    'ChangeKind',
    'ChangeSet',
    'diff_trees',
    'apply_changes',
    # Store
    'ModelStore',
    'InMemoryModelStore',
]
