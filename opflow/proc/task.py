"""Task tree nodes.

A task tree is a list of TaskNodes. Leaf tasks act on a host (``script``,
``command``, ``file-copy``, ``template``); composite tasks structure the
list (``switch``, ``try``) or delegate (``exec``, ``call``, ``query``);
``throw`` and ``raise`` signal errors and events.

Task parameters live in the task's ordered ``scope`` like any other
binding, e.g. a command reads ``$cmd`` and ``$args``::

    - task: command
      scope:
        cmd: "cat /root/hosts > /etc/hosts"

Each entry is evaluated in order and may use the entries above it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from opflow.expr import Value

ScopeEntries = Tuple[Tuple[str, Value], ...]


class TaskKind(Enum):
    """Declared ``task:`` kinds."""
    SCRIPT = 'script'
    COMMAND = 'command'
    FILE_COPY = 'file-copy'
    TEMPLATE = 'template'
    SWITCH = 'switch'
    EXEC = 'exec'
    TRY = 'try'
    THROW = 'throw'
    RAISE = 'raise'
    CALL = 'call'
    QUERY = 'query'

    @property
    def is_leaf(self) -> bool:
        return self in _LEAF_KINDS

    @property
    def mutates(self) -> bool:
        """True for kinds that always change host state."""
        return self in (TaskKind.FILE_COPY, TaskKind.TEMPLATE)


_LEAF_KINDS = frozenset({
    TaskKind.SCRIPT, TaskKind.COMMAND, TaskKind.FILE_COPY, TaskKind.TEMPLATE,
})

OUTPUT_FORMATS = ('json', 'yaml', 'text')


@dataclass(frozen=True)
class OutputSpec:
    """Capture of a task's standard output.

    Attributes:
        var: Name the parsed output is bound to for subsequent siblings.
        format: ``json``, ``yaml`` or ``text``; None uses the engine default.
    """
    var: str
    format: Optional[str] = None


@dataclass(frozen=True)
class TaskNode:
    """Fields shared by every task kind."""

    kind: TaskKind
    id: Optional[str] = None
    label: Optional[str] = None
    scope: ScopeEntries = ()
    ro: bool = False
    output: Optional[OutputSpec] = None
    run_as: Optional[Value] = None
    env: Optional[Value] = None

    @property
    def name(self) -> str:
        """Human readable name for reports and logs."""
        return self.label or self.id or self.kind.value

    def children(self) -> Tuple['TaskNode', ...]:
        """Nested tasks (empty for leaves)."""
        return ()


@dataclass(frozen=True)
class ScriptTask(TaskNode):
    """Run a script; reads ``src_path`` or ``source``, ``interpreter`` and
    ``args`` from its scope."""


@dataclass(frozen=True)
class CommandTask(TaskNode):
    """Run a command; reads ``cmd`` and ``args`` from its scope."""


@dataclass(frozen=True)
class FileCopyTask(TaskNode):
    """Materialize a file; reads ``src_path``, ``dst_path``, ``chown``,
    ``chmod``, ``process`` and ``vars`` from its scope.

    Templates (``process: true``) see only the bindings listed in ``vars``.
    """


@dataclass(frozen=True)
class TemplateTask(FileCopyTask):
    """File copy that is always templated."""


@dataclass(frozen=True)
class SwitchCase:
    when: Value
    tasks: Tuple[TaskNode, ...] = ()


@dataclass(frozen=True)
class SwitchTask(TaskNode):
    cases: Tuple[SwitchCase, ...] = ()

    def children(self) -> Tuple[TaskNode, ...]:
        return tuple(t for case in self.cases for t in case.tasks)


@dataclass(frozen=True)
class ExecTask(TaskNode):
    """Delegate to an ``exec`` proc named by the ``exec`` scope entry; the
    other scope entries are passed as overrides."""


@dataclass(frozen=True)
class CatchSpec:
    """Handler of a ``try`` task.

    Attributes:
        var: Name the error mapping is bound to inside the handler.
        tasks: Handler tasks.
        event: Event type published with the error, if any.
        payload: Extra event fields.
        rethrow: Fail the try task after handling.
    """
    var: str = 'error'
    tasks: Tuple[TaskNode, ...] = ()
    event: Optional[str] = None
    payload: Optional[Value] = None
    rethrow: bool = False


@dataclass(frozen=True)
class TryTask(TaskNode):
    tasks: Tuple[TaskNode, ...] = ()
    catch: CatchSpec = field(default_factory=CatchSpec)

    def children(self) -> Tuple[TaskNode, ...]:
        return self.tasks + self.catch.tasks


@dataclass(frozen=True)
class ThrowTask(TaskNode):
    """Fail with a ValidationError; reads ``message`` from its scope."""


@dataclass(frozen=True)
class RaiseTask(TaskNode):
    """Publish an event of type ``event`` with ``payload`` fields."""
    event: str = ''
    payload: Optional[Value] = None


@dataclass(frozen=True)
class CallTask(TaskNode):
    """Invoke an aspect ``fn``; scope entries are its arguments."""
    fn: str = ''


@dataclass(frozen=True)
class QueryTask(TaskNode):
    """Invoke a cached aspect query; scope entries are its arguments."""
    query: str = ''


def walk_tasks(tasks: Tuple[TaskNode, ...]):
    """Yield every task of a tree in pre-order."""
    for task in tasks:
        yield task
        yield from walk_tasks(task.children())
