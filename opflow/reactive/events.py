"""Typed event bus.

Event types form a hierarchy through ``extends``. Publishing an event
delivers it, synchronously and in the publisher's thread, to the handlers
of its own type and then to the handlers of every supertype:

    events:
      host_error: {fields: [message]}
      unreachable: {extends: host_error}

    bus.publish('unreachable', {'host': 'zeus', 'message': 'timeout'})
    # -> handlers of 'unreachable', then handlers of 'host_error'

A handler failure is logged and reported in the returned deliveries; it
never propagates into the publisher.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from opflow.exceptions import ValidationError
from opflow.exec import EventDelivery
from opflow.proc import ERROR_EVENT, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Any]

BUILTIN_TYPES = (
    EventType(ERROR_EVENT, None, ('type', 'message')),
)


class EventBus:
    """Registry of event types and their handlers.

    Args:
        types: Event types to declare up front
        max_depth: Limit on events published from inside handlers

    Example:
        bus = EventBus([EventType('deployed', fields=('version',))])
        bus.subscribe('deployed', lambda event, payload: print(payload))
        bus.publish('deployed', {'version': '1.2'})
    """

    def __init__(self, types: Iterable[EventType] = (), max_depth: int = 16):
        self._types: Dict[str, EventType] = {}
        self._handlers: Dict[str, List[Tuple[str, Handler]]] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        self.max_depth = max_depth
        for event_type in BUILTIN_TYPES:
            self.declare(event_type)
        for event_type in types:
            self.declare(event_type)

    def declare(self, event_type: EventType) -> None:
        """Declare an event type.

        Redeclaring an identical type is a no-op.

        Raises:
            ValueError: If a different type with the same name exists.
        """
        with self._lock:
            existing = self._types.get(event_type.name)
            if existing is not None and existing != event_type:
                raise ValueError(f"Conflicting declarations of event '{event_type.name}'")
            self._types[event_type.name] = event_type

    def is_declared(self, name: str) -> bool:
        return name in self._types

    def subscribe(self, event: str, handler: Handler,
                  name: Optional[str] = None) -> None:
        """Register ``handler`` for ``event`` (and therefore its subtypes)."""
        with self._lock:
            self._handlers.setdefault(event, []).append(
                (name or getattr(handler, '__name__', repr(handler)), handler))

    def lineage(self, event: str) -> List[str]:
        """Return ``event`` followed by its supertypes, nearest first.

        Raises:
            ValidationError: If the type is unknown, or the hierarchy has
                a cycle or an undeclared supertype.
        """
        chain = []
        name: Optional[str] = event
        while name is not None:
            if name in chain:
                raise ValidationError(f"Event type '{event}' has a cyclic hierarchy")
            event_type = self._types.get(name)
            if event_type is None:
                raise ValidationError(f"Unknown event type '{name}'")
            chain.append(name)
            name = event_type.extends
        return chain

    def fields(self, event: str) -> List[str]:
        """Fields required by ``event``, inherited ones included."""
        required: List[str] = []
        for name in reversed(self.lineage(event)):
            for field_name in self._types[name].fields:
                if field_name not in required:
                    required.append(field_name)
        return required

    def publish(self, event: str, payload: Dict[str, Any]) -> List[EventDelivery]:
        """Validate and deliver an event.

        Returns:
            One EventDelivery per handler that received the event

        Raises:
            ValidationError: If the type is unknown, a required field is
                missing, or events nest deeper than ``max_depth``.
        """
        chain = self.lineage(event)
        missing = [f for f in self.fields(event) if f not in payload]
        if missing:
            raise ValidationError(
                f"Event '{event}' is missing field(s): {', '.join(missing)}")

        depth = getattr(self._local, 'depth', 0)
        if depth >= self.max_depth:
            raise ValidationError(
                f"Event '{event}' published more than {self.max_depth} levels deep")

        with self._lock:
            handlers = [h for name in chain for h in self._handlers.get(name, [])]
        logger.debug("Publishing '%s' to %d handler(s)", event, len(handlers))

        deliveries = []
        self._local.depth = depth + 1
        try:
            for name, handler in handlers:
                deliveries.append(self._deliver(event, payload, name, handler))
        finally:
            self._local.depth = depth
        return deliveries

    def _deliver(self, event: str, payload: Dict[str, Any], name: str,
                 handler: Handler) -> EventDelivery:
        try:
            result = handler(event, dict(payload))
        except Exception as e:
            logger.exception("Handler '%s' failed on event '%s'", name, event)
            return EventDelivery(event, name, False, str(e))
        if getattr(result, 'failed', False):
            errors = '; '.join(str(e) for e in result.errors()) or 'failed'
            logger.warning("Handler '%s' failed on event '%s': %s", name, event, errors)
            return EventDelivery(event, name, False, errors)
        return EventDelivery(event, name)
