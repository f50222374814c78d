"""Wiring of aspects into the running engine.

AspectRuntime installs every registered aspect:

- event types are declared on the EventBus;
- ``on`` handlers are subscribed and run their tasks with ``$event``
  bound to the payload;
- polls are registered with the PollScheduler;
- queries, checks and fns become callable by name.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from opflow.exceptions import UnknownProcError
from opflow.exec import Host, HostReport, ProcReport, TaskTreeExecutor
from opflow.expr import Scope, resolve_scope
from opflow.proc import Aspect, HandlerDecl, PollDecl, ProcRegistry, RunBlock
from .events import EventBus
from .poll import PollScheduler

logger = logging.getLogger(__name__)


class AspectRuntime:
    """Connects aspects to the executor, event bus and poll scheduler.

    Args:
        registry: Registry holding the aspects
        executor: Executor running handler, poll and fn tasks
        events: Bus the aspects' events are declared on
        scheduler: Scheduler the polls are registered with
        scope: Callable returning the global scope of the current revision
    """

    def __init__(self, registry: ProcRegistry, executor: TaskTreeExecutor,
                 events: EventBus, scheduler: PollScheduler,
                 scope: Callable[[], Scope]):
        self.registry = registry
        self.executor = executor
        self.events = events
        self.scheduler = scheduler
        self.scope = scope
        self._installed = False

    def install(self) -> None:
        """Declare events, subscribe handlers and register polls once."""
        if self._installed:
            return
        for event_type in self.registry.event_types():
            self.events.declare(event_type)
        for aspect in self.registry.aspects():
            for handler in aspect.handlers:
                self.events.subscribe(handler.event, self._handler(aspect, handler),
                                      name=aspect.qualified(f'on.{handler.event}'))
            for poll in aspect.polls.values():
                self.scheduler.register(aspect.qualified(poll.name),
                                        poll.attributes.interval,
                                        self._poll(aspect, poll))
        self._installed = True
        logger.debug("Installed %d aspect(s)", len(self.registry.aspects()))

    def _aspect_scope(self, aspect: Aspect, extra: Optional[Dict[str, Any]] = None) -> Scope:
        scope = resolve_scope(aspect.scope, self.scope())
        return scope.child(extra) if extra else scope

    def _handler(self, aspect: Aspect, handler: HandlerDecl):
        name = aspect.qualified(f'on.{handler.event}')

        def handle(event: str, payload: Dict[str, Any]) -> ProcReport:
            logger.info("Handling '%s' with %s", event, name)
            scope = self._aspect_scope(aspect, {'event': payload})
            return self.executor.run_blocks(
                name, 'handler', [RunBlock(handler.hosts, handler.tasks)], scope,
                aspect.base_dir)
        return handle

    def _poll(self, aspect: Aspect, poll: PollDecl):
        name = aspect.qualified(poll.name)

        def run() -> ProcReport:
            report = self.executor.run_blocks(
                name, 'poll', [RunBlock(poll.hosts, poll.tasks)],
                self._aspect_scope(aspect), aspect.base_dir)
            if report.failed:
                logger.warning("Poll '%s' failed: %s", name,
                               '; '.join(str(e) for e in report.errors()))
            return report
        return run

    def host(self, name: str) -> Host:
        """Return the host entry named ``name`` in the current revision.

        Raises:
            KeyError: If no such host exists.
        """
        for node in self.scope().lookup_global('hosts'):
            host = Host.from_node(node)
            if host.name == name:
                return host
        raise KeyError(f"Unknown host: {name}")

    def query(self, name: str, host: str, **args) -> Any:
        """Evaluate a (cached) query for one host."""
        return self.executor.query(name, self.host(host), self.scope(), args)

    def call_fn(self, name: str, host: str, **args) -> HostReport:
        """Run a fn on one host."""
        return self.executor.call_fn(name, self.host(host), self.scope(), args)

    def check(self, name: str) -> ProcReport:
        """Run one aspect check, named ``aspect.check``.

        Raises:
            UnknownProcError: If the check does not exist.
        """
        aspect_name, _, check = name.partition('.')
        for aspect in self.registry.aspects():
            if aspect.name == aspect_name and check in aspect.checks:
                return self.executor.run_proc(aspect.checks[check], self.scope())
        raise UnknownProcError(f"Unknown check '{name}'")

    def polls(self) -> List[str]:
        return self.scheduler.names()
