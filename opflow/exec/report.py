"""Run reports.

The executor never lets a leaf failure escape as an exception across a
host boundary; instead every run produces a report tree:

    RunReport
      ProcReport (one per proc run)
        HostReport (one per host and run block)
          TaskReport (one per executed task, nested for composites)

Reports are plain dataclasses and can be rendered with ``to_dict``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskOutcome(Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    RECOVERED = 'recovered'
    SKIPPED = 'skipped'


class HostStatus(Enum):
    """Lifecycle of one host's task list.

    ``PENDING -> RUNNING -> COMPLETED | FAILED | RECOVERED``; hosts never
    started because of ``fail_fast`` end as ``SKIPPED``.
    """
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RECOVERED = 'recovered'
    SKIPPED = 'skipped'

    @property
    def is_final(self) -> bool:
        return self not in (HostStatus.PENDING, HostStatus.RUNNING)


@dataclass
class EventDelivery:
    """Result of delivering one event to one handler.

    Attributes:
        event: Published event type.
        handler: Handler description (``aspect.on.<type>``).
        succeeded: False when the handler failed.
        error: Failure message, if any.
    """
    event: str
    handler: str
    succeeded: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'event': self.event,
            'handler': self.handler,
            'succeeded': self.succeeded,
            'error': self.error,
        }


@dataclass
class TaskReport:
    index: int
    name: str
    kind: str
    outcome: TaskOutcome = TaskOutcome.COMPLETED
    stdout: str = ''
    stderr: str = ''
    exit_code: Optional[int] = None
    error: Optional[str] = None
    children: List['TaskReport'] = field(default_factory=list)
    delegated: Optional['ProcReport'] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            'index': self.index,
            'name': self.name,
            'kind': self.kind,
            'outcome': self.outcome.value,
        }
        if self.exit_code is not None:
            data.update(stdout=self.stdout, stderr=self.stderr,
                        exit_code=self.exit_code)
        if self.error is not None:
            data['error'] = self.error
        if self.children:
            data['children'] = [c.to_dict() for c in self.children]
        if self.delegated is not None:
            data['delegated'] = self.delegated.to_dict()
        return data


@dataclass
class HostReport:
    """Execution record of one host in one run block.

    Attributes:
        host: Host name.
        block: Index of the run block.
        status: Current HostStatus.
        current_index: Top-level task being run while RUNNING.
        failed_index: Top-level task that failed, if any.
        error: The failure, if any.
        tasks: Reports of top-level tasks in order.
        warnings: Messages of errors recovered by ``try`` tasks.
        deliveries: Events published while running this host.
    """
    host: str
    block: int = 0
    status: HostStatus = HostStatus.PENDING
    current_index: Optional[int] = None
    failed_index: Optional[int] = None
    error: Optional[Exception] = None
    tasks: List[TaskReport] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    deliveries: List[EventDelivery] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status is HostStatus.FAILED

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            'host': self.host,
            'block': self.block,
            'status': self.status.value,
            'tasks': [t.to_dict() for t in self.tasks],
        }
        if self.failed_index is not None:
            data['failed_index'] = self.failed_index
        if self.error is not None:
            data['error'] = str(self.error)
        if self.warnings:
            data['warnings'] = list(self.warnings)
        if self.deliveries:
            data['deliveries'] = [d.to_dict() for d in self.deliveries]
        return data


@dataclass
class ProcReport:
    """Execution record of one proc.

    ``error`` is set when the proc failed before reaching its hosts (for
    example when its hosts expression could not be evaluated).
    """
    proc: str
    kind: str
    hosts: List[HostReport] = field(default_factory=list)
    error: Optional[Exception] = None
    changes: List[dict] = field(default_factory=list)
    files: List[str] = field(default_factory=list)

    @property
    def status(self) -> HostStatus:
        statuses = [h.status for h in self.hosts]
        if self.error is not None or HostStatus.FAILED in statuses:
            return HostStatus.FAILED
        if HostStatus.RECOVERED in statuses:
            return HostStatus.RECOVERED
        if statuses and all(s is HostStatus.SKIPPED for s in statuses):
            return HostStatus.SKIPPED
        return HostStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status is HostStatus.FAILED

    def host(self, name: str, block: int = 0) -> HostReport:
        """Return the report of ``name`` in run block ``block``.

        Raises:
            KeyError: If the host did not run in that block.
        """
        for report in self.hosts:
            if report.host == name and report.block == block:
                return report
        raise KeyError(f"No report for host '{name}' in block {block} of '{self.proc}'")

    def errors(self) -> List[Exception]:
        errors = [self.error] if self.error is not None else []
        errors.extend(h.error for h in self.hosts if h.failed and h.error is not None)
        return errors

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            'proc': self.proc,
            'kind': self.kind,
            'status': self.status.value,
            'hosts': [h.to_dict() for h in self.hosts],
        }
        if self.error is not None:
            data['error'] = str(self.error)
        if self.changes:
            data['changes'] = self.changes
        if self.files:
            data['files'] = self.files
        return data


@dataclass
class RunReport:
    """Reports of every proc started by one engine call, in start order."""
    procs: List[ProcReport] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not any(p.failed for p in self.procs)

    def failed(self) -> List[ProcReport]:
        return [p for p in self.procs if p.failed]

    def get(self, name: str) -> ProcReport:
        for report in self.procs:
            if report.proc == name:
                return report
        raise KeyError(f"No report for proc '{name}'")

    def names(self) -> List[str]:
        return [p.proc for p in self.procs]

    def __len__(self) -> int:
        return len(self.procs)

    def to_dict(self) -> dict:
        return {
            'succeeded': self.succeeded,
            'procs': [p.to_dict() for p in self.procs],
        }
