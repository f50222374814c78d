"""Task tree execution against hosts.

Example:
    from opflow.exec import DryRunExecutor, TaskTreeExecutor

    executor = TaskTreeExecutor(registry, DryRunExecutor())
    report = executor.run_proc(registry.get('yum_check'), scope)
    for host in report.hosts:
        print(host.host, host.status.value)
"""

from .capability import (
    Host, CommandRequest, ScriptRequest, FileCopyRequest, CommandResult,
    MaterializeResult, ExecRequest, ExecutionCapability, check_result,
)
from .local import LocalExecutor
from .dryrun import DryRunExecutor, RecordedCall, request_key
from .output import parse_output
from .report import (
    EventDelivery, HostReport, HostStatus, ProcReport, RunReport, TaskOutcome,
    TaskReport,
)
from .executor import EventPublisher, QueryStore, TaskTreeExecutor

__all__ = [
    # Capability
    'Host',
    'CommandRequest',
    'ScriptRequest',
    'FileCopyRequest',
    'CommandResult',
    'MaterializeResult',
    'ExecRequest',
    'ExecutionCapability',
    'check_result',
    'LocalExecutor',
    'DryRunExecutor',
    'RecordedCall',
    'request_key',
    # Output and reports
    'parse_output',
    'EventDelivery',
    'HostReport',
    'HostStatus',
    'ProcReport',
    'RunReport',
    'TaskOutcome',
    'TaskReport',
    # Executor
    'EventPublisher',
    'QueryStore',
    'TaskTreeExecutor',
]
