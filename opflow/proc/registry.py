"""Registry of declared procs and aspects.

The registry keeps declaration order (which is the order triggered procs
start in) and exposes its declarations to expressions as ``$$procs``: a
mapping from proc name to a record of the declaration. An ``exec`` task
names its target with any expression yielding such a record or a plain
proc name::

    exec: ${$$procs[@key == 'yum_install']}
    exec: yum_install
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple, TypeVar

from opflow.exceptions import UnknownProcError
from opflow.expr import NodeSet
from opflow.model import ModelTree, NodeKind, NodeRef
from .aspect import Aspect, EventType, FnDecl, PollDecl, QueryDecl
from .proc import Proc, ProcKind

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ProcRegistry:
    """Declaration-ordered collection of procs and aspects.

    Example:
        registry = ProcRegistry()
        registry.register(proc)
        registry.get('yum_install')
        registry.nodes()      # node set bound as $$procs
    """

    def __init__(self):
        self._procs: Dict[str, Proc] = {}
        self._aspects: Dict[str, Aspect] = {}
        self._tree: Optional[ModelTree] = None
        self._lock = threading.Lock()

    def register(self, proc: Proc) -> None:
        """Register a proc.

        Raises:
            ValueError: If a proc with the same name is already registered.
        """
        if proc.name in self._procs:
            raise ValueError(f"Duplicate proc: {proc.name}")
        self._procs[proc.name] = proc
        self._tree = None
        logger.debug("Registered %s", proc)

    def register_aspect(self, aspect: Aspect) -> None:
        """Register an aspect.

        Raises:
            ValueError: If an aspect with the same name is already registered.
        """
        if aspect.name in self._aspects:
            raise ValueError(f"Duplicate aspect: {aspect.name}")
        self._aspects[aspect.name] = aspect
        logger.debug("Registered aspect '%s'", aspect.name)

    def procs(self, kind: Optional[ProcKind] = None) -> List[Proc]:
        """Procs in declaration order, optionally of one kind."""
        return [p for p in self._procs.values() if kind is None or p.kind is kind]

    def aspects(self) -> List[Aspect]:
        return list(self._aspects.values())

    def get(self, name: str) -> Proc:
        """Return the proc named ``name``.

        Raises:
            UnknownProcError: If no such proc exists.
        """
        try:
            return self._procs[name]
        except KeyError:
            raise UnknownProcError(f"Unknown proc '{name}'") from None

    def __contains__(self, name: str) -> bool:
        return name in self._procs

    def __len__(self) -> int:
        return len(self._procs)

    @property
    def tree(self) -> ModelTree:
        """Declarations as a tree: ``{name: record}``."""
        with self._lock:
            if self._tree is None:
                self._tree = ModelTree(
                    {name: proc.to_record() for name, proc in self._procs.items()})
            return self._tree

    def nodes(self) -> NodeSet:
        """Node set bound as ``$$procs``."""
        return tuple(self.tree.root.children())

    def resolve(self, ref: NodeSet) -> Proc:
        """Resolve the value of an ``exec`` binding to a proc.

        Accepts a ``$$procs`` record, any mapping with a ``name`` entry,
        or a proc name.

        Raises:
            UnknownProcError: If the reference is empty, ambiguous or names
                no registered proc.
        """
        if not ref:
            raise UnknownProcError("Proc reference resolved to nothing")
        if len(ref) > 1:
            names = ', '.join(self._ref_name(n) or '?' for n in ref)
            raise UnknownProcError(f"Proc reference is ambiguous: {names}")
        name = self._ref_name(ref[0])
        if name is None:
            raise UnknownProcError(f"Not a proc reference: {ref[0].value!r}")
        return self.get(name)

    def _ref_name(self, node: NodeRef) -> Optional[str]:
        if node.tree is not None and node.tree is self._tree and node.key:
            return node.key
        if node.kind is NodeKind.MAPPING and isinstance(node.value.get('name'), str):
            return node.value['name']
        if node.kind is NodeKind.STRING:
            return node.value
        return None

    def _member(self, name: str, attr: str, what: str) -> Tuple[Aspect, T]:
        if '.' in name:
            aspect_name, member = name.split('.', 1)
            aspect = self._aspects.get(aspect_name)
            if aspect is not None and member in getattr(aspect, attr):
                return aspect, getattr(aspect, attr)[member]
            raise UnknownProcError(f"Unknown {what} '{name}'")
        found = [(a, getattr(a, attr)[name]) for a in self._aspects.values()
                 if name in getattr(a, attr)]
        if not found:
            raise UnknownProcError(f"Unknown {what} '{name}'")
        if len(found) > 1:
            owners = ', '.join(a.name for a, _ in found)
            raise UnknownProcError(
                f"Ambiguous {what} '{name}' (declared in {owners})")
        return found[0]

    def fn(self, name: str) -> Tuple[Aspect, FnDecl]:
        """Look up a fn by ``aspect.name`` or by a unique bare name."""
        return self._member(name, 'fns', 'fn')

    def query(self, name: str) -> Tuple[Aspect, QueryDecl]:
        """Look up a query by ``aspect.name`` or by a unique bare name."""
        return self._member(name, 'queries', 'query')

    def checks(self) -> List[Proc]:
        """Check procs followed by aspect checks, in declaration order."""
        checks = self.procs(ProcKind.CHECK)
        for aspect in self._aspects.values():
            checks.extend(aspect.checks.values())
        return checks

    def polls(self) -> List[Tuple[Aspect, PollDecl]]:
        return [(a, p) for a in self._aspects.values() for p in a.polls.values()]

    def event_types(self) -> List[EventType]:
        return [e for a in self._aspects.values() for e in a.events.values()]
