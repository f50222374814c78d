"""Task tree executor.

Runs the run blocks of a proc: each block's hosts expression selects host
entries from the model, and the block's task list runs once per host.

Within a host, tasks run strictly in order and a failure stops the list
(the remaining tasks are reported as skipped). Hosts run concurrently on a
short-lived thread pool; one host failing never cancels another. Leaf
operations against one host are serialized by a per-host lock, so nested
delegation touching the same host never interleaves on it.

Scopes per host:

    revision globals ($$model, $$hosts, $$old, $$procs, ...)
      proc scope (file scope + proc scope, + exec overrides)
        host overlay ($$host)               <- global layer
          captured outputs of earlier siblings
            task scope (parameters)

Example:
    executor = TaskTreeExecutor(registry, DryRunExecutor())
    report = executor.run_proc(registry.get('yum_check'), revision_scope(tree))
    report.status   # HostStatus.COMPLETED
"""

import logging
import shlex
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from opflow.config import EngineConfig
from opflow.exceptions import (
    DelegationError, ExpressionError, OpflowError, RemoteExecutionError,
    UnknownProcError, ValidationError,
)
from opflow.expr import (
    EMPTY, NodeSet, Scope, Value, as_condition, render_template,
    resolve_scope, to_optional_text, to_scalar, to_text, unwrap,
)
from opflow.expr.values import scalar_text
from opflow.model import NodeKind
from opflow.proc import (
    Aspect, CallTask, Proc, ProcKind, ProcRegistry, QueryDecl, QueryTask,
    RunBlock, TaskKind, TaskNode,
)
from .capability import (
    CommandRequest, CommandResult, ExecRequest, ExecutionCapability,
    FileCopyRequest, Host, ScriptRequest, check_result,
)
from .output import parse_output
from .report import (
    EventDelivery, HostReport, HostStatus, ProcReport, TaskOutcome, TaskReport,
)

logger = logging.getLogger(__name__)

Binding = Optional[Tuple[str, Any]]


class EventPublisher(Protocol):
    def publish(self, event: str, payload: Dict[str, Any]) -> List[EventDelivery]:
        ...


class QueryStore(Protocol):
    def get(self, query: str, host: str, args: Dict[str, Any], ttl: float,
            compute: Callable[[], Any]) -> Any:
        ...


@dataclass(frozen=True)
class _Context:
    """State of one host's execution, replaced (not mutated) when a task
    enters a read-only block, a delegation or an aspect member."""
    proc: str
    host: Host
    report: HostReport
    base_dir: Optional[Path] = None
    ro: bool = False
    depth: int = 0


class TaskTreeExecutor:
    """Executes task trees against hosts through an ExecutionCapability.

    Attributes:
        registry: Declarations (``exec``, ``call`` and ``query`` targets).
        capability: Transport used for every leaf operation.
        config: Engine settings (worker counts, fail_fast, depth limit).
        events: Event bus used by ``raise`` tasks and ``catch`` handlers.
        queries: Query cache used by ``query`` tasks (computed directly
                 when None).
    """

    def __init__(self, registry: ProcRegistry, capability: ExecutionCapability,
                 config: Optional[EngineConfig] = None,
                 events: Optional[EventPublisher] = None,
                 queries: Optional[QueryStore] = None):
        self.registry = registry
        self.capability = capability
        self.config = config or EngineConfig()
        self.events = events
        self.queries = queries
        self._host_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._handlers = {
            TaskKind.SCRIPT: self._script,
            TaskKind.COMMAND: self._command,
            TaskKind.FILE_COPY: self._file_copy,
            TaskKind.TEMPLATE: self._file_copy,
            TaskKind.SWITCH: self._switch,
            TaskKind.EXEC: self._exec,
            TaskKind.TRY: self._try,
            TaskKind.THROW: self._throw,
            TaskKind.RAISE: self._raise,
            TaskKind.CALL: self._call,
            TaskKind.QUERY: self._query,
        }

    # -- procs and blocks ---------------------------------------------------

    def run_proc(self, proc: Proc, scope: Scope,
                 overrides: Optional[Mapping[str, Any]] = None,
                 ro: bool = False) -> ProcReport:
        """Run every run block of ``proc``.

        Args:
            proc: Proc to run
            scope: Global scope of the revision
            overrides: Extra bindings layered over the proc scope
            ro: Run the whole proc in a read-only context

        Returns:
            ProcReport; failures are recorded, never raised
        """
        try:
            proc_scope = self._proc_scope(proc, scope, overrides)
        except OpflowError as e:
            logger.error("%s: scope failed: %s", proc, e)
            return ProcReport(proc.name, proc.kind.value, error=e)
        return self.run_blocks(proc.name, proc.kind.value, proc.run, proc_scope,
                               proc.base_dir, ro=ro)

    def run_blocks(self, name: str, kind: str, blocks: Sequence[RunBlock],
                   scope: Scope, base_dir: Optional[Path] = None,
                   ro: bool = False) -> ProcReport:
        """Run run blocks in order and report instead of raising."""
        report = ProcReport(name, kind)
        try:
            self._execute_blocks(report, blocks, scope, base_dir, 0, ro)
        except OpflowError as e:
            logger.error("%s '%s' failed: %s", kind, name, e)
            report.error = e
        return report

    def query(self, name: str, host: Host, scope: Scope,
              args: Optional[Mapping[str, Any]] = None) -> Any:
        """Evaluate a cached query for one host outside any task tree.

        Raises:
            OpflowError: If the query fails or cannot be resolved.
        """
        report = HostReport(host.name, status=HostStatus.RUNNING)
        ctx = _Context(f"query '{name}'", host, report)
        task_scope = scope.child({'host': host.node}, is_global=True).child(args)
        _, value = self._query(QueryTask(TaskKind.QUERY, query=name), task_scope,
                               ctx, TaskReport(0, name, TaskKind.QUERY.value))
        return value

    def call_fn(self, name: str, host: Host, scope: Scope,
                args: Optional[Mapping[str, Any]] = None) -> HostReport:
        """Run an aspect fn on one host and report instead of raising."""
        proc = f"fn '{name}'"
        report = HostReport(host.name, status=HostStatus.RUNNING)
        task_report = TaskReport(0, name, TaskKind.CALL.value)
        report.tasks.append(task_report)
        ctx = _Context(proc, host, report)
        task_scope = scope.child({'host': host.node}, is_global=True).child(args)
        try:
            self._call(CallTask(TaskKind.CALL, fn=name), task_scope, ctx, task_report)
        except OpflowError as e:
            task_report.outcome = TaskOutcome.FAILED
            task_report.error = str(e)
            report.status = HostStatus.FAILED
            report.failed_index = 0
            report.error = e
            logger.error("[%s] %s failed: %s", host, proc, e)
            return report
        report.status = HostStatus.RECOVERED if report.warnings else HostStatus.COMPLETED
        return report

    def _proc_scope(self, proc: Proc, scope: Scope,
                    overrides: Optional[Mapping[str, Any]] = None) -> Scope:
        proc_scope = resolve_scope(proc.scope, scope)
        if overrides:
            proc_scope = proc_scope.child(overrides)
        return proc_scope

    def resolve_hosts(self, hosts: Value, scope: Scope) -> List[Host]:
        """Evaluate a hosts expression into distinct hosts, in order.

        Raises:
            ExpressionError: If a selected node is not a mapping.
        """
        seen: Set[Any] = set()
        result = []
        for node in hosts.resolve(scope):
            host = Host.from_node(node)
            key = node.identity() if node.is_attached else ('name', host.name)
            if key in seen:
                continue
            seen.add(key)
            result.append(host)
        return result

    def _execute_blocks(self, report: ProcReport, blocks: Sequence[RunBlock],
                        scope: Scope, base_dir: Optional[Path], depth: int,
                        ro: bool) -> None:
        failed: Set[str] = set()
        abort = threading.Event()
        for index, block in enumerate(blocks):
            hosts = self.resolve_hosts(block.hosts, scope)
            logger.debug("'%s' block %d: %d host(s)", report.proc, index, len(hosts))

            def run(host: Host) -> HostReport:
                if host.name in failed or abort.is_set():
                    logger.info("[%s] %s: skipped", host, report.proc)
                    return HostReport(host.name, index, HostStatus.SKIPPED)
                host_report = self._run_host(report.proc, index, host, block.tasks,
                                             scope, base_dir, depth, ro)
                if (host_report.failed and self.config.fail_fast
                        and not host_report.error.recoverable):
                    abort.set()
                return host_report

            if len(hosts) == 1:
                reports = [run(hosts[0])]
            else:
                workers = max(1, min(self.config.max_host_workers, len(hosts)))
                with ThreadPoolExecutor(max_workers=workers,
                                        thread_name_prefix='opflow-host') as pool:
                    reports = list(pool.map(run, hosts))
            report.hosts.extend(reports)
            failed.update(r.host for r in reports if r.failed)

    def _run_host(self, proc: str, block: int, host: Host,
                  tasks: Sequence[TaskNode], scope: Scope,
                  base_dir: Optional[Path], depth: int, ro: bool) -> HostReport:
        report = HostReport(host.name, block, HostStatus.RUNNING)
        ctx = _Context(proc, host, report, base_dir, ro, depth)
        host_scope = scope.child({'host': host.node}, is_global=True)
        logger.info("[%s] %s: running %d task(s)", host, proc, len(tasks))
        try:
            self._run_list(tasks, host_scope, ctx, report.tasks, top_level=True)
        except OpflowError as e:
            report.status = HostStatus.FAILED
            report.error = e
            report.current_index = None
            logger.error("[%s] %s: task %s failed: %s", host, proc,
                         report.failed_index, e)
            return report
        report.current_index = None
        report.status = HostStatus.RECOVERED if report.warnings else HostStatus.COMPLETED
        return report

    # -- task lists ---------------------------------------------------------

    def _run_list(self, tasks: Sequence[TaskNode], scope: Scope, ctx: _Context,
                  reports: List[TaskReport], top_level: bool = False) -> Scope:
        """Run tasks in order; return the scope left by the last task."""
        for i, task in enumerate(tasks):
            if top_level:
                ctx.report.current_index = i
            report = TaskReport(i, task.name, task.kind.value)
            reports.append(report)
            try:
                scope = self._run_task(task, scope, ctx, report)
            except OpflowError as e:
                report.outcome = TaskOutcome.FAILED
                report.error = str(e)
                if top_level:
                    ctx.report.failed_index = i
                    reports.extend(
                        TaskReport(j, t.name, t.kind.value, TaskOutcome.SKIPPED)
                        for j, t in enumerate(tasks[i + 1:], i + 1))
                raise
        return scope

    def _run_task(self, task: TaskNode, scope: Scope, ctx: _Context,
                  report: TaskReport) -> Scope:
        if task.ro and not ctx.ro:
            ctx = replace(ctx, ro=True)
        logger.debug("[%s] %s: %s task '%s'", ctx.host, ctx.proc,
                     task.kind.value, task.name)
        task_scope = resolve_scope(task.scope, scope)
        binding = self._handlers[task.kind](task, task_scope, ctx, report)
        if binding is not None:
            name, value = binding
            scope = scope.child({name: value})
        return scope

    # -- parameters ---------------------------------------------------------

    def _param(self, scope: Scope, name: str) -> NodeSet:
        """A parameter is bound in the task's own layer."""
        return scope.vars.get(name, EMPTY)

    def _text(self, scope: Scope, name: str) -> str:
        return scalar_text(to_scalar(self._param(scope, name), f"'{name}'"))

    def _optional_text(self, scope: Scope, name: str) -> Optional[str]:
        return to_optional_text(self._param(scope, name), f"'{name}'")

    def _args(self, scope: Scope) -> Tuple[str, ...]:
        nodes = self._param(scope, 'args')
        if len(nodes) == 1 and nodes[0].kind is NodeKind.SEQUENCE:
            return tuple(scalar_text(v) for v in nodes[0].value)
        return tuple(shlex.split(to_text(nodes)))

    def _run_as(self, task: TaskNode, scope: Scope) -> Optional[str]:
        nodes = task.run_as.resolve(scope) if task.run_as is not None else \
            self._param(scope, 'run_as')
        return to_optional_text(nodes, "'run_as'")

    def _env(self, task: TaskNode, scope: Scope) -> Dict[str, str]:
        nodes = task.env.resolve(scope) if task.env is not None else \
            self._param(scope, 'env')
        value = unwrap(nodes)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ExpressionError("'env' must be a mapping")
        return {str(k): scalar_text(v) for k, v in value.items()}

    def _mode(self, scope: Scope) -> Optional[str]:
        value = unwrap(self._param(scope, 'chmod'))
        # YAML reads 0644 as the integer 420
        if isinstance(value, int) and not isinstance(value, bool):
            return format(value, '04o')
        return self._optional_text(scope, 'chmod')

    def _read(self, path: str, ctx: _Context) -> str:
        file_path = Path(path)
        if not file_path.is_absolute() and ctx.base_dir is not None:
            file_path = ctx.base_dir / file_path
        try:
            return file_path.read_text()
        except OSError as e:
            raise ValidationError(f"Cannot read '{file_path}': {e}") from e

    def _content(self, scope: Scope, ctx: _Context, what: str) -> Tuple[Optional[str], str]:
        src_path = self._optional_text(scope, 'src_path')
        source = self._optional_text(scope, 'source')
        if source is not None:
            return src_path, source
        if src_path is None:
            raise ExpressionError(f"{what} needs 'src_path' or 'source'")
        return src_path, self._read(src_path, ctx)

    def _capture(self, task: TaskNode, stdout: str) -> Binding:
        if task.output is None:
            return None
        fmt = task.output.format or self.config.default_output_format
        return task.output.var, parse_output(stdout, fmt)

    # -- capability calls ---------------------------------------------------

    def _lock_for(self, host: Host) -> threading.Lock:
        with self._locks_guard:
            return self._host_locks.setdefault(host.name, threading.Lock())

    def _execute(self, ctx: _Context, request: ExecRequest,
                 report: TaskReport) -> CommandResult:
        host = ctx.host
        try:
            with self._lock_for(host):
                result = self.capability.execute(host, request)
        except OpflowError:
            raise
        except Exception as e:
            raise RemoteExecutionError(host.name, e) from e
        report.stdout = result.stdout
        report.stderr = result.stderr
        report.exit_code = result.exit_code
        return check_result(host, request, result)

    # -- task kinds ---------------------------------------------------------

    def _command(self, task, scope, ctx, report) -> Binding:
        request = CommandRequest(
            cmd=self._text(scope, 'cmd'),
            args=self._args(scope),
            env=self._env(task, scope),
            run_as=self._run_as(task, scope),
            read_only=ctx.ro,
        )
        result = self._execute(ctx, request, report)
        return self._capture(task, result.stdout)

    def _script(self, task, scope, ctx, report) -> Binding:
        src_path, source = self._content(scope, ctx, 'Script task')
        request = ScriptRequest(
            source=source,
            src_path=src_path,
            interpreter=self._optional_text(scope, 'interpreter'),
            args=self._args(scope),
            env=self._env(task, scope),
            run_as=self._run_as(task, scope),
            read_only=ctx.ro,
        )
        result = self._execute(ctx, request, report)
        return self._capture(task, result.stdout)

    def _template_scope(self, nodes: NodeSet) -> Scope:
        """Templates see the entries of ``vars`` and nothing else."""
        if not nodes or (len(nodes) == 1 and nodes[0].value is None):
            return Scope.root()
        if len(nodes) > 1 or nodes[0].kind is not NodeKind.MAPPING:
            raise ExpressionError("'vars' must be a mapping")
        return Scope.root({child.key: child for child in nodes[0].children()})

    def _file_copy(self, task, scope, ctx, report) -> Binding:
        if ctx.ro:
            raise ValidationError(
                f"{task.kind.value} task '{task.name}' is not allowed in a read-only context")
        dst_path = self._text(scope, 'dst_path')
        src_path, content = self._content(scope, ctx, f"{task.kind.value} task")
        templated = (task.kind is TaskKind.TEMPLATE
                     or as_condition(self._param(scope, 'process'), "'process'"))
        if templated:
            content = render_template(content, self._template_scope(self._param(scope, 'vars')))

        request = FileCopyRequest(
            src_path=src_path or '',
            dst_path=dst_path,
            content=content,
            templated=templated,
            chown=self._optional_text(scope, 'chown'),
            chmod=self._mode(scope),
            run_as=self._run_as(task, scope),
        )
        host = ctx.host
        try:
            with self._lock_for(host):
                result = self.capability.materialize(host, request)
        except OpflowError:
            raise
        except Exception as e:
            raise RemoteExecutionError(host.name, e) from e
        if isinstance(result, CommandResult):
            report.stdout, report.stderr, report.exit_code = (
                result.stdout, result.stderr, result.exit_code)
            if not result.success:
                raise RemoteExecutionError(
                    host.name, f"copy to '{dst_path}' exited with code {result.exit_code}",
                    exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)
        return None

    def _switch(self, task, scope, ctx, report) -> Binding:
        for i, case in enumerate(task.cases):
            if as_condition(case.when.resolve(scope), f"'when' of case {i}"):
                logger.debug("[%s] %s: case %d of '%s' matched",
                             ctx.host, ctx.proc, i, task.name)
                # bindings made in a case end with it
                self._run_list(case.tasks, scope, ctx, report.children)
                return None
        return None

    def _exec(self, task, scope, ctx, report) -> Binding:
        if ctx.depth >= self.config.max_exec_depth:
            raise OpflowError(
                f"Delegation deeper than {self.config.max_exec_depth} levels")
        proc = self.registry.resolve(self._param(scope, 'exec'))
        if proc.kind is not ProcKind.EXEC:
            raise UnknownProcError(f"'{proc.name}' is not an exec proc")

        overrides = {name: nodes for name, nodes in scope.vars.items() if name != 'exec'}
        callee_scope = self._proc_scope(proc, scope.globals_only(), overrides)
        delegated = ProcReport(proc.name, proc.kind.value)
        report.delegated = delegated
        logger.info("[%s] %s: delegating to '%s'", ctx.host, ctx.proc, proc.name)
        self._execute_blocks(delegated, proc.run, callee_scope, proc.base_dir,
                             ctx.depth + 1, ctx.ro)
        errors = delegated.errors()
        if errors:
            raise DelegationError(proc.name, errors)
        return None

    def _try(self, task, scope, ctx, report) -> Binding:
        try:
            # bindings made in the body end with it
            self._run_list(task.tasks, scope, ctx, report.children)
            return None
        except OpflowError as e:
            if not e.recoverable:
                raise
            error = e

        catch = task.catch
        data = error.to_mapping()
        data.setdefault('host', ctx.host.name)
        logger.warning("[%s] %s: '%s' caught %s: %s", ctx.host, ctx.proc,
                       task.name, data['type'], error)
        if catch.event:
            payload = dict(data)
            payload.update(self._payload(catch.payload, scope))
            self._publish(catch.event, payload, ctx)

        self._run_list(catch.tasks, scope.child({catch.var: data}), ctx,
                       report.children)
        if catch.rethrow:
            raise error
        ctx.report.warnings.append(f"{task.name}: {error}")
        report.outcome = TaskOutcome.RECOVERED
        return None

    def _throw(self, task, scope, ctx, report) -> Binding:
        message = self._optional_text(scope, 'message') or f"'{task.name}' failed"
        raise ValidationError(message)

    def _payload(self, value: Optional[Value], scope: Scope) -> Dict[str, Any]:
        if value is None:
            return {}
        payload = value.plain(scope)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ExpressionError("Event payload must be a mapping")
        return dict(payload)

    def _publish(self, event: str, payload: Dict[str, Any], ctx: _Context) -> None:
        if self.events is None:
            raise OpflowError(f"Cannot publish '{event}': no event bus")
        deliveries = self.events.publish(event, payload)
        ctx.report.deliveries.extend(deliveries)

    def _raise(self, task, scope, ctx, report) -> Binding:
        payload = self._payload(task.payload, scope)
        payload.setdefault('host', ctx.host.name)
        self._publish(task.event, payload, ctx)
        return None

    def _arguments(self, params: Sequence[str], scope: Scope,
                   what: str) -> Dict[str, NodeSet]:
        args = dict(scope.vars)
        unknown = sorted(set(args) - set(params))
        if unknown:
            raise ExpressionError(f"{what}: unknown argument(s) {', '.join(unknown)}")
        missing = [p for p in params if p not in args]
        if missing:
            raise ExpressionError(f"{what}: missing argument(s) {', '.join(missing)}")
        return args

    def _member_scope(self, aspect: Aspect, scope: Scope,
                      args: Dict[str, NodeSet]) -> Scope:
        return resolve_scope(aspect.scope, scope.globals_only()).child(args)

    def _call(self, task, scope, ctx, report) -> Binding:
        aspect, fn = self.registry.fn(task.fn)
        args = self._arguments(fn.params, scope, f"fn '{task.fn}'")
        fn_ctx = replace(ctx, base_dir=aspect.base_dir or ctx.base_dir)
        self._run_list(fn.tasks, self._member_scope(aspect, scope, args), fn_ctx,
                       report.children)
        return None

    def _query(self, task, scope, ctx, report) -> Binding:
        aspect, decl = self.registry.query(task.query)
        args = self._arguments(decl.params, scope, f"query '{task.query}'")
        ttl = decl.attributes.cache_interval
        if ttl is None:
            ttl = self.config.default_cache_interval

        def compute():
            return self._compute_query(aspect, decl, args, scope, ctx, report)

        if self.queries is None:
            value = compute()
        else:
            plain_args = {name: unwrap(nodes) for name, nodes in args.items()}
            value = self.queries.get(aspect.qualified(decl.name), ctx.host.name,
                                     plain_args, ttl, compute)
        name = task.output.var if task.output is not None else (task.id or decl.name)
        return name, value

    def _compute_query(self, aspect: Aspect, decl: QueryDecl,
                       args: Dict[str, NodeSet], scope: Scope, ctx: _Context,
                       report: TaskReport) -> Any:
        """Run a query body read-only and evaluate its result."""
        query_ctx = replace(ctx, ro=True, base_dir=aspect.base_dir or ctx.base_dir)
        final = self._run_list(decl.tasks, self._member_scope(aspect, scope, args),
                               query_ctx, report.children)
        if decl.result is None:
            return None
        return decl.result.plain(final)
