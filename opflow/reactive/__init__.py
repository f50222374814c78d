"""Reactive execution: change-triggered procs, events, polls and queries.

This module provides the runtime around the task tree executor:

- ReactiveEngine: matches change sets and runs triggered procs
- EventBus: typed events with supertype delivery
- QueryCache: TTL cache with in-flight deduplication
- PollScheduler: interval-triggered polls on a timer thread
- AspectRuntime: wires declared aspects to the above

Example:
    from opflow.reactive import ReactiveEngine

    engine = ReactiveEngine(registry, executor)
    report = engine.run(diff_trees(old, new))
    print(report.succeeded)
"""

from .events import EventBus, BUILTIN_TYPES
from .cache import QueryCache
from .poll import PollScheduler
from .aspects import AspectRuntime
from .engine import ReactiveEngine

__all__ = [
    'ReactiveEngine',
    'EventBus',
    'BUILTIN_TYPES',
    'QueryCache',
    'PollScheduler',
    'AspectRuntime',
]
