"""Proc declarations.

A proc is a named unit of task execution:

- ``update`` procs are triggered by model changes (``watch``) and touched
  files (``watch_file``);
- ``check`` procs are read-only verifications run on demand;
- ``exec`` procs are invoked by name from an ``exec`` task.

Example declaration:
    yum_update_add:
      proc: update
      label: Added packages
      watch:
        $$hosts.packages[*]: "+"
      run:
      - hosts: ${$$hosts[$$model_changes.new_path ^= @.@path + '.']}
        tasks:
        - task: exec
          scope:
            exec: ${$$procs[@key == 'yum_install']}
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from opflow.expr import Value, compile_value
from opflow.matching import FileWatchSpec, WatchSpec
from .task import ScopeEntries, TaskNode, walk_tasks

DEFAULT_HOSTS = '${$$hosts}'


class ProcKind(Enum):
    UPDATE = 'update'
    CHECK = 'check'
    EXEC = 'exec'


@dataclass(frozen=True)
class RunBlock:
    """One ``run`` entry: a hosts expression and the tasks run per host."""

    hosts: Value = field(default_factory=lambda: compile_value(DEFAULT_HOSTS))
    tasks: Tuple[TaskNode, ...] = ()


@dataclass(frozen=True)
class Proc:
    """A declared proc.

    Attributes:
        name: Unique proc name.
        kind: update, check or exec.
        label: Human readable description.
        watches: Model watch entries (update procs).
        file_watches: File glob watches (update procs).
        run: Run blocks executed in order.
        scope: Ordered bindings of the declaring file and the proc itself.
        base_dir: Directory relative paths (``src_path``) resolve against.
        source: File the proc was declared in, if any.
    """
    name: str
    kind: ProcKind
    label: Optional[str] = None
    watches: Tuple[WatchSpec, ...] = ()
    file_watches: Tuple[FileWatchSpec, ...] = ()
    run: Tuple[RunBlock, ...] = ()
    scope: ScopeEntries = ()
    base_dir: Optional[Path] = None
    source: Optional[str] = None

    @property
    def is_triggerable(self) -> bool:
        """Only update procs are selected by the watch matcher."""
        return self.kind is ProcKind.UPDATE

    def tasks(self):
        """Every task of every run block, in pre-order."""
        for block in self.run:
            yield from walk_tasks(block.tasks)

    def to_record(self) -> dict:
        """Plain mapping exposed through ``$$procs``."""
        return {
            'name': self.name,
            'proc': self.kind.value,
            'label': self.label,
            'watch': {w.pattern: w.mask.operators for w in self.watches},
            'watch_file': {w.pattern: w.marker for w in self.file_watches},
            'source': self.source,
        }

    def __str__(self) -> str:
        return f"{self.kind.value} proc '{self.name}'"
