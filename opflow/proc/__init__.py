"""Proc, task tree and aspect declarations.

Example:
    from opflow.proc import ProcRegistry
    from opflow.yaml import load_directory

    registry = load_directory('model/proc').registry
    for proc in registry.procs():
        print(proc.name, proc.kind.value)
"""

from .task import (
    TaskKind, TaskNode, OutputSpec, ScriptTask, CommandTask, FileCopyTask,
    TemplateTask, SwitchCase, SwitchTask, ExecTask, CatchSpec, TryTask,
    ThrowTask, RaiseTask, CallTask, QueryTask, OUTPUT_FORMATS, walk_tasks,
)
from .proc import Proc, ProcKind, RunBlock, DEFAULT_HOSTS
from .aspect import (
    Aspect, EventType, FnDecl, QueryDecl, QueryAttributes, PollDecl,
    PollAttributes, HandlerDecl, ERROR_EVENT, HANDLER_HOSTS,
)
from .registry import ProcRegistry

__all__ = [
    # Tasks
    'TaskKind',
    'TaskNode',
    'OutputSpec',
    'ScriptTask',
    'CommandTask',
    'FileCopyTask',
    'TemplateTask',
    'SwitchCase',
    'SwitchTask',
    'ExecTask',
    'CatchSpec',
    'TryTask',
    'ThrowTask',
    'RaiseTask',
    'CallTask',
    'QueryTask',
    'OUTPUT_FORMATS',
    'walk_tasks',
    # Procs
    'Proc',
    'ProcKind',
    'RunBlock',
    'DEFAULT_HOSTS',
    # Aspects
    'Aspect',
    'EventType',
    'FnDecl',
    'QueryDecl',
    'QueryAttributes',
    'PollDecl',
    'PollAttributes',
    'HandlerDecl',
    'ERROR_EVENT',
    'HANDLER_HOSTS',
    # Registry
    'ProcRegistry',
]
