"""Reactive engine: from model changes to proc runs.

The engine ties the pieces together:

1. A change set (two revisions plus touched files) is matched against the
   watches of every ``update`` proc
2. Triggered procs run concurrently, started in declaration order, each
   with ``$$model_changes`` and ``$$touched_files`` bound to what
   triggered it
3. Every proc's hosts run concurrently; results come back as a RunReport

Check and exec procs run on demand (``run_proc``, ``verify``); aspects add
events, polls and cached queries on top.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from opflow.config import EngineConfig
from opflow.exceptions import UnknownProcError
from opflow.exec import ExecutionCapability, ProcReport, RunReport, TaskTreeExecutor
from opflow.expr import Scope, revision_scope
from opflow.matching import Trigger, WatchMatcher
from opflow.model import ChangeSet, ModelStore, ModelTree, diff_trees
from opflow.proc import Proc, ProcKind, ProcRegistry
from .aspects import AspectRuntime
from .cache import QueryCache
from .events import EventBus
from .poll import PollScheduler

logger = logging.getLogger(__name__)


def _record_nodes(items: List[Any]):
    """Bind a list of records as a node set (one node per record)."""
    return tuple(ModelTree(items).root.children())


@dataclass
class ReactiveEngine:
    """Runs procs in reaction to model changes.

    Example:
        from opflow.reactive import ReactiveEngine
        from opflow.yaml import load_directory

        loaded = load_directory('model/proc')
        engine = ReactiveEngine(loaded.registry, executor, loaded.config)

        report = engine.run(diff_trees(old, new))
        for proc in report.failed():
            print(proc.proc, [str(e) for e in proc.errors()])
    """

    registry: ProcRegistry
    """Procs and aspects to run."""

    capability: ExecutionCapability
    """Transport for every host operation."""

    config: EngineConfig = field(default_factory=EngineConfig)
    """Engine settings."""

    clock: Callable[[], float] = time.monotonic
    """Time source of the query cache and the poll scheduler."""

    events: EventBus = field(init=False)
    cache: QueryCache = field(init=False)
    scheduler: PollScheduler = field(init=False)
    executor: TaskTreeExecutor = field(init=False)
    aspects: AspectRuntime = field(init=False)
    model: Optional[ModelTree] = field(default=None, init=False)
    """Current revision; set by ``run``/``update`` or ``set_model``."""

    def __post_init__(self):
        """Initialize internal components."""
        self.events = EventBus(max_depth=self.config.max_exec_depth)
        self.cache = QueryCache(self.clock)
        self.scheduler = PollScheduler(self.config.poll_tick, self.clock,
                                       self.config.max_proc_workers)
        self.executor = TaskTreeExecutor(self.registry, self.capability, self.config,
                                         self.events, self.cache)
        self.aspects = AspectRuntime(self.registry, self.executor, self.events,
                                     self.scheduler, self.current_scope)
        self.aspects.install()

    # -- scopes -------------------------------------------------------------

    def scope(self, tree: ModelTree, old: Optional[ModelTree] = None,
              trigger: Optional[Trigger] = None) -> Scope:
        """Global scope of a revision, with the trigger's changes if any."""
        extra = {}
        if trigger is not None:
            extra['model_changes'] = _record_nodes(trigger.records())
            extra['touched_files'] = _record_nodes(list(trigger.files))
        return revision_scope(tree, old, self.registry.nodes(),
                              self.config.hosts_key, extra)

    def set_model(self, tree: ModelTree) -> None:
        self.model = tree

    def current_scope(self) -> Scope:
        """Global scope of the current revision.

        Raises:
            ValueError: If no model has been set yet.
        """
        if self.model is None:
            raise ValueError("No model revision loaded")
        return self.scope(self.model)

    # -- running ------------------------------------------------------------

    def _run_all(self, jobs: Sequence[Tuple[Proc, Scope]]) -> RunReport:
        """Run procs concurrently, started in the given order."""
        if not jobs:
            return RunReport()
        if len(jobs) == 1:
            proc, scope = jobs[0]
            return RunReport([self.executor.run_proc(proc, scope)])
        workers = max(1, min(self.config.max_proc_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix='opflow-proc') as pool:
            futures = [pool.submit(self.executor.run_proc, proc, scope)
                       for proc, scope in jobs]
            return RunReport([f.result() for f in futures])

    def triggers(self, changeset: ChangeSet) -> List[Trigger]:
        """Procs a change set triggers, in declaration order.

        Raises:
            ValueError: If the change set does not carry both revisions.
        """
        if changeset.old is None or changeset.new is None:
            raise ValueError("Change set must carry its old and new revisions")
        matcher = WatchMatcher(self.registry.procs(ProcKind.UPDATE))
        old_scope = self.scope(changeset.old)
        new_scope = self.scope(changeset.new, changeset.old)
        return matcher.match(changeset, old_scope, new_scope)

    def run(self, changeset: ChangeSet) -> RunReport:
        """Run every update proc triggered by ``changeset``.

        Returns:
            RunReport with one ProcReport per triggered proc, in
            declaration order
        """
        triggers = self.triggers(changeset)
        self.model = changeset.new
        logger.info("%d change(s), %d file(s): %d proc(s) triggered",
                    len(changeset), len(changeset.touched_files), len(triggers))

        jobs = [(t.proc, self.scope(changeset.new, changeset.old, t)) for t in triggers]
        report = self._run_all(jobs)
        for trigger, proc_report in zip(triggers, report.procs):
            proc_report.changes = trigger.records()
            proc_report.files = list(trigger.files)
        return report

    def update(self, store: ModelStore) -> RunReport:
        """Diff the store's previous and current revisions and run the result."""
        old, new = store.current_and_previous()
        touched = store.touched_files((store.previous_id, store.current_id))
        logger.info("Updating %s -> %s", store.previous_id, store.current_id)
        return self.run(diff_trees(old, new, touched))

    def run_proc(self, name: str, tree: Optional[ModelTree] = None,
                 **overrides) -> ProcReport:
        """Run a check or exec proc explicitly.

        Args:
            name: Proc name, or ``aspect.check`` for an aspect check
            tree: Model revision to run against (the current one by default)
            overrides: Bindings layered over the proc scope

        Raises:
            UnknownProcError: If the proc does not exist or is an update proc
            ValueError: If no model revision is available
        """
        if tree is not None:
            self.model = tree
        scope = self.current_scope()
        if name not in self.registry and '.' in name:
            return self.aspects.check(name)
        proc = self.registry.get(name)
        if proc.kind is ProcKind.UPDATE:
            raise UnknownProcError(f"'{name}' is an update proc; it runs on model changes")
        return self.executor.run_proc(proc, scope, overrides)

    def verify(self, tree: Optional[ModelTree] = None) -> RunReport:
        """Run every check proc and aspect check."""
        if tree is not None:
            self.model = tree
        scope = self.current_scope()
        checks = self.registry.checks()
        logger.info("Running %d check(s)", len(checks))
        return self._run_all([(proc, scope) for proc in checks])

    def query(self, name: str, host: str, **args) -> Any:
        return self.aspects.query(name, host, **args)

    def publish(self, event: str, payload: dict):
        return self.events.publish(event, payload)

    def start(self) -> None:
        """Start running polls."""
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
