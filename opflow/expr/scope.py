"""Layered variable scopes.

A Scope is an immutable linked chain of layers. Each layer maps names to
node sets and is either *global* or *local*:

- ``$$name`` looks only at global layers, nearest first;
- ``$name`` looks at every layer, nearest first.

Binding never mutates a layer; ``bind`` and ``child`` return new scopes, so
a scope can be shared freely between hosts running concurrently.

Example:
    root = Scope.root({'model': tree, 'hosts': host_nodes})
    proc = root.child({'retries': 3})
    host = proc.child({'host': host_node}, is_global=True)
    host.lookup_global('host')   # (NodeRef('hosts.zeus'),)
    host.lookup('retries')       # (NodeRef(detached, 3),)
"""

from typing import Any, Dict, Iterator, Mapping, Optional

from opflow.model import ModelPath, ModelTree
from .values import EMPTY, NodeSet, as_nodeset


class Scope:
    """One layer of bindings plus a link to the enclosing scope."""

    __slots__ = ('vars', 'parent', 'is_global')

    def __init__(self, vars: Optional[Mapping[str, Any]] = None,
                 parent: Optional['Scope'] = None, is_global: bool = False):
        self.vars: Dict[str, NodeSet] = {
            name: as_nodeset(value) for name, value in (vars or {}).items()
        }
        self.parent = parent
        self.is_global = is_global

    @classmethod
    def root(cls, globals: Optional[Mapping[str, Any]] = None) -> 'Scope':
        """Create the outermost (global) scope."""
        return cls(globals, None, is_global=True)

    def child(self, vars: Optional[Mapping[str, Any]] = None,
              is_global: bool = False) -> 'Scope':
        """Return a new scope layered on top of this one."""
        return Scope(vars, self, is_global)

    def bind(self, name: str, value: Any) -> 'Scope':
        """Return a copy of this layer with one more binding."""
        scope = Scope(None, self.parent, self.is_global)
        scope.vars = dict(self.vars)
        scope.vars[name] = as_nodeset(value)
        return scope

    def layers(self) -> Iterator['Scope']:
        scope: Optional[Scope] = self
        while scope is not None:
            yield scope
            scope = scope.parent

    def lookup(self, name: str) -> NodeSet:
        """Resolve ``$name``; unbound names give the empty set."""
        for layer in self.layers():
            if name in layer.vars:
                return layer.vars[name]
        return EMPTY

    def lookup_global(self, name: str) -> NodeSet:
        """Resolve ``$$name`` through global layers only."""
        for layer in self.layers():
            if layer.is_global and name in layer.vars:
                return layer.vars[name]
        return EMPTY

    def is_bound(self, name: str) -> bool:
        return any(name in layer.vars for layer in self.layers())

    def globals_only(self) -> 'Scope':
        """Return a chain made of this scope's global layers only."""
        layers = [layer for layer in self.layers() if layer.is_global]
        scope: Optional[Scope] = None
        for layer in reversed(layers):
            copy = Scope(None, scope, True)
            copy.vars = layer.vars
            scope = copy
        return scope if scope is not None else Scope.root()

    def __repr__(self) -> str:
        kind = 'global' if self.is_global else 'local'
        return f'Scope({kind}, {sorted(self.vars)})'


def host_nodes(tree: ModelTree, hosts_key: str = 'hosts') -> NodeSet:
    """Return the host entries of a model: the children of ``hosts_key``."""
    node = tree.node(ModelPath((hosts_key,)))
    if node is None:
        return EMPTY
    return tuple(node.children())


def revision_scope(tree: ModelTree, old: Optional[ModelTree] = None,
                   procs: NodeSet = EMPTY, hosts_key: str = 'hosts',
                   extra: Optional[Mapping[str, Any]] = None) -> Scope:
    """Build the global scope of one model revision.

    Globals:
        $$model   root of ``tree``
        $$hosts   host entries of ``tree``
        $$old     root of ``old`` (``tree`` itself when there is none)
        $$procs   declarations of the proc registry
    """
    values = {
        'model': tree.root,
        'hosts': host_nodes(tree, hosts_key),
        'old': (old if old is not None else tree).root,
        'procs': procs,
    }
    values.update(extra or {})
    return Scope.root(values)
