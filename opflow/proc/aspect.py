"""Aspect declarations.

An aspect bundles the reactive members of one domain::

    aspects:
      hosts:
        events:
          host_error: {fields: [host, message]}
          unreachable: {extends: host_error}
        fn:
          restart_service:
            params: [service]
            tasks:
            - task: command
              scope: {cmd: "systemctl restart ${$service}"}
        checks:
          uptime:
            tasks:
            - task: command
              ro: true
              scope: {cmd: uptime}
        queries:
          kernel:
            "@": {cache_interval: 1m}
            tasks:
            - task: command
              scope: {cmd: uname -r}
              output: {var: kernel, format: text}
            result: ${$kernel}
        polls:
          ping:
            "@": {interval: 30s}
            tasks:
            - task: command
              scope: {cmd: "true"}
        on:
          host_error:
            tasks:
            - task: command
              scope: {cmd: "logger ${$event.message}"}

Attribute annotations (the ``"@"`` mapping) are lowered to the plain
QueryAttributes / PollAttributes dataclasses when the aspect is loaded.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from opflow.expr import Value, compile_value
from .proc import DEFAULT_HOSTS, Proc
from .task import ScopeEntries, TaskNode

ERROR_EVENT = 'error'

HANDLER_HOSTS = '${$$hosts[@key == $event.host]}'


@dataclass(frozen=True)
class EventType:
    """Declared event type.

    Attributes:
        name: Event type name.
        extends: Name of the supertype, if any.
        fields: Field names the payload must carry (inherited fields
                included at validation time).
    """
    name: str
    extends: Optional[str] = None
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FnDecl:
    """Reusable task list invoked by ``call`` tasks."""
    name: str
    params: Tuple[str, ...] = ()
    tasks: Tuple[TaskNode, ...] = ()


@dataclass(frozen=True)
class QueryAttributes:
    cache_interval: Optional[float] = None


@dataclass(frozen=True)
class QueryDecl:
    """Cached read-only computation.

    The tasks run on the requesting host; ``result`` is evaluated in the
    scope left by the last task.
    """
    name: str
    params: Tuple[str, ...] = ()
    tasks: Tuple[TaskNode, ...] = ()
    result: Optional[Value] = None
    attributes: QueryAttributes = field(default_factory=QueryAttributes)


@dataclass(frozen=True)
class PollAttributes:
    interval: float = 60.0


@dataclass(frozen=True)
class PollDecl:
    """Interval-triggered probe; its tasks may ``raise`` events."""
    name: str
    hosts: Value = field(default_factory=lambda: compile_value(DEFAULT_HOSTS))
    tasks: Tuple[TaskNode, ...] = ()
    attributes: PollAttributes = field(default_factory=PollAttributes)


@dataclass(frozen=True)
class HandlerDecl:
    """``on`` handler; runs with ``$event`` bound to the event payload."""
    event: str
    hosts: Value = field(default_factory=lambda: compile_value(HANDLER_HOSTS))
    tasks: Tuple[TaskNode, ...] = ()


@dataclass(frozen=True)
class Aspect:
    name: str
    events: Dict[str, EventType] = field(default_factory=dict)
    fns: Dict[str, FnDecl] = field(default_factory=dict)
    checks: Dict[str, Proc] = field(default_factory=dict)
    queries: Dict[str, QueryDecl] = field(default_factory=dict)
    polls: Dict[str, PollDecl] = field(default_factory=dict)
    handlers: Tuple[HandlerDecl, ...] = ()
    scope: ScopeEntries = ()
    base_dir: Optional[Path] = None

    def qualified(self, member: str) -> str:
        return f'{self.name}.{member}'
