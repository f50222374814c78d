"""Execution capability that records requests instead of running them.

Example:
    executor = DryRunExecutor(results={
        ('zeus', 'yum-check.sh'): CommandResult(stdout='["curl"]'),
    })
    engine = ReactiveEngine(registry, executor)
    engine.run_proc('yum_check', tree)
    executor.requests_for('zeus')   # [ScriptRequest(...)]
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .capability import (
    CommandRequest, CommandResult, ExecRequest, FileCopyRequest, Host,
    MaterializeResult,
)

logger = logging.getLogger(__name__)

Request = Union[CommandRequest, FileCopyRequest, ExecRequest]
Responder = Callable[[Host, Request], Union[CommandResult, MaterializeResult]]


def request_key(request: Request) -> str:
    """Short identifier of a request: the command, script or destination."""
    if isinstance(request, CommandRequest):
        return request.cmd
    if isinstance(request, FileCopyRequest):
        return request.dst_path
    return request.src_path or request.source


@dataclass(frozen=True)
class RecordedCall:
    host: str
    request: Request


class DryRunExecutor:
    """Records every request and answers with canned results.

    Results are looked up, in order, by ``(host, key)``, then by ``key``
    (see ``request_key``), then by calling ``responder``; anything else
    succeeds with empty output.

    Args:
        results: Canned results keyed by ``(host, key)`` or ``key``.
        responder: Callable ``(host, request)`` returning a result (or
                   raising RemoteExecutionError).
    """

    def __init__(self,
                 results: Optional[Dict[Union[str, Tuple[str, str]], CommandResult]] = None,
                 responder: Optional[Responder] = None):
        self.results = dict(results or {})
        self.responder = responder
        self.calls: List[RecordedCall] = []
        self._lock = threading.Lock()

    def _record(self, host: Host, request: Request) -> None:
        with self._lock:
            self.calls.append(RecordedCall(host.name, request))
        logger.info("[%s] dry run: %s", host.name, request_key(request))

    def _lookup(self, host: Host, request: Request):
        key = request_key(request)
        if (host.name, key) in self.results:
            return self.results[(host.name, key)]
        if key in self.results:
            return self.results[key]
        if self.responder is not None:
            return self.responder(host, request)
        return None

    def execute(self, host: Host, request: ExecRequest) -> CommandResult:
        self._record(host, request)
        result = self._lookup(host, request)
        return result if result is not None else CommandResult()

    def materialize(self, host: Host, request: FileCopyRequest) -> MaterializeResult:
        self._record(host, request)
        result = self._lookup(host, request)
        if isinstance(result, MaterializeResult):
            return result
        if isinstance(result, CommandResult) and not result.success:
            return result
        return MaterializeResult(request.content, {'path': request.dst_path})

    def requests(self) -> List[Request]:
        with self._lock:
            return [c.request for c in self.calls]

    def requests_for(self, host: str) -> List[Request]:
        with self._lock:
            return [c.request for c in self.calls if c.host == host]

    def hosts(self) -> List[str]:
        """Hosts that received at least one request, in first-call order."""
        with self._lock:
            seen: Dict[str, None] = {}
            for call in self.calls:
                seen.setdefault(call.host, None)
            return list(seen)

    def reset(self) -> None:
        with self._lock:
            self.calls.clear()
