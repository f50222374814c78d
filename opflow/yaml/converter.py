"""Convert validated declarations to Proc and Aspect objects.

Every value is compiled here (``${...}`` expressions are parsed once), so
syntax errors surface at load time as DeclarationError naming the proc and
task they belong to.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from opflow.config import parse_duration
from opflow.exceptions import ConfigError, ExpressionSyntaxError
from opflow.expr import compile_scope, compile_value
from opflow.matching import FileWatchSpec, WatchSpec
from opflow.proc import (
    Aspect, CallTask, CatchSpec, CommandTask, EventType, ExecTask, FileCopyTask,
    FnDecl, HandlerDecl, OutputSpec, PollAttributes, PollDecl, Proc, ProcKind,
    QueryAttributes, QueryDecl, QueryTask, RaiseTask, RunBlock, ScriptTask,
    SwitchCase, SwitchTask, TaskKind, TaskNode, TemplateTask, ThrowTask, TryTask,
)
from .parser import PARAMETER_KEYS, DeclarationError, DeclarationFile, normalize_check

_TASK_CLASSES = {
    TaskKind.SCRIPT: ScriptTask,
    TaskKind.COMMAND: CommandTask,
    TaskKind.FILE_COPY: FileCopyTask,
    TaskKind.TEMPLATE: TemplateTask,
    TaskKind.SWITCH: SwitchTask,
    TaskKind.EXEC: ExecTask,
    TaskKind.TRY: TryTask,
    TaskKind.THROW: ThrowTask,
    TaskKind.RAISE: RaiseTask,
    TaskKind.CALL: CallTask,
    TaskKind.QUERY: QueryTask,
}


@contextmanager
def _declaring(where: str):
    """Re-raise compilation errors as DeclarationError naming ``where``."""
    try:
        yield
    except (ExpressionSyntaxError, ConfigError, ValueError) as e:
        raise DeclarationError(f"{where}: {e}") from e


def declarations_to_procs(
    decl: DeclarationFile,
    base_dir: Optional[Path] = None,
) -> List[Proc]:
    """Convert all procs of a declaration file.

    Args:
        decl: Parsed declaration file
        base_dir: Directory for relative ``src_path`` values (defaults to
                  the file's directory or cwd)

    Returns:
        Procs in declaration order
    """
    base_dir = _base_dir(decl, base_dir)
    with _declaring(f"{decl.source} scope"):
        file_scope = compile_scope(decl.scope)
    return [
        yaml_to_proc(name, raw, file_scope, base_dir, decl.source)
        for name, raw in decl.procs.items()
    ]


def declarations_to_aspects(
    decl: DeclarationFile,
    base_dir: Optional[Path] = None,
) -> List[Aspect]:
    """Convert all aspects of a declaration file."""
    base_dir = _base_dir(decl, base_dir)
    with _declaring(f"{decl.source} scope"):
        file_scope = compile_scope(decl.scope)
    return [
        yaml_to_aspect(name, raw, file_scope, base_dir, decl.source)
        for name, raw in decl.aspects.items()
    ]


def _base_dir(decl: DeclarationFile, base_dir: Optional[Path]) -> Path:
    if base_dir is not None:
        return Path(base_dir).resolve()
    if decl.path is not None:
        return Path(decl.path).resolve().parent
    return Path('.').resolve()


def yaml_to_proc(
    name: str,
    raw: Dict[str, Any],
    file_scope: Tuple = (),
    base_dir: Optional[Path] = None,
    source: Optional[str] = None,
) -> Proc:
    """Convert a validated proc definition to a Proc.

    Args:
        name: Proc name
        raw: Proc dictionary
        file_scope: Compiled file-level scope entries
        base_dir: Directory for relative paths
        source: Declaring file, for reporting

    Returns:
        Proc instance
    """
    where = f"Proc '{name}'"
    with _declaring(where):
        watches = tuple(WatchSpec.parse(pattern, ops)
                        for pattern, ops in (raw.get('watch') or {}).items())
        file_watches = tuple(FileWatchSpec(str(pattern), ops or '~')
                             for pattern, ops in (raw.get('watch_file') or {}).items())
        scope = tuple(file_scope) + compile_scope(raw.get('scope'))

    run = []
    for i, block in enumerate(raw.get('run') or []):
        run.append(_run_block(block, f"{where} run[{i}]"))

    return Proc(
        name=name,
        kind=ProcKind(raw.get('proc')),
        label=raw.get('label'),
        watches=watches,
        file_watches=file_watches,
        run=tuple(run),
        scope=scope,
        base_dir=base_dir,
        source=source,
    )


def _run_block(block: Dict[str, Any], where: str) -> RunBlock:
    tasks = yaml_to_tasks(block.get('tasks') or [], where)
    if block.get('hosts') is None:
        return RunBlock(tasks=tasks)
    with _declaring(f"{where} hosts"):
        return RunBlock(hosts=compile_value(block['hosts']), tasks=tasks)


def yaml_to_tasks(raw_tasks: List[Any], where: str) -> Tuple[TaskNode, ...]:
    return tuple(yaml_to_task(raw, f"{where} task {i}")
                 for i, raw in enumerate(raw_tasks))


def yaml_to_task(raw: Dict[str, Any], where: str) -> TaskNode:
    """Convert a validated task definition to a TaskNode."""
    kind = TaskKind(raw.get('task', raw.get('kind')))
    if raw.get('id') or raw.get('label'):
        where = f"{where} ('{raw.get('id') or raw.get('label')}')"

    with _declaring(where):
        scope = compile_scope(raw.get('scope'))
        params = {k: v for k, v in raw.items() if k in PARAMETER_KEYS}
        scope = scope + compile_scope(params)
        common = dict(
            kind=kind,
            id=raw.get('id'),
            label=raw.get('label'),
            scope=scope,
            ro=bool(raw.get('ro', False)),
            output=_output(raw),
            run_as=None if raw.get('run_as') is None else compile_value(raw['run_as']),
            env=None if raw.get('env') is None else compile_value(raw['env']),
        )

        if kind is TaskKind.SWITCH:
            return SwitchTask(cases=_cases(raw.get('cases') or [], where), **common)
        if kind is TaskKind.TRY:
            return TryTask(
                tasks=yaml_to_tasks(raw.get('tasks') or [], where),
                catch=_catch(raw.get('catch') or {}, where),
                **common,
            )
        if kind is TaskKind.RAISE:
            payload = raw.get('payload')
            return RaiseTask(
                event=raw['event'],
                payload=None if payload is None else compile_value(payload),
                **common,
            )
        if kind is TaskKind.CALL:
            return CallTask(fn=raw['fn'], **common)
        if kind is TaskKind.QUERY:
            return QueryTask(query=raw['query'], **common)
        return _TASK_CLASSES[kind](**common)


def _output(raw: Dict[str, Any]) -> Optional[OutputSpec]:
    output = raw.get('output')
    if output is None:
        return None
    if isinstance(output, str):
        return OutputSpec(var=str(raw['id']), format=output)
    return OutputSpec(var=output['var'], format=output.get('format'))


def _cases(raw_cases: List[Dict[str, Any]], where: str) -> Tuple[SwitchCase, ...]:
    cases = []
    for i, case in enumerate(raw_cases):
        case_where = f"{where} case {i}"
        if 'run' in case:
            tasks: Tuple[TaskNode, ...] = ()
            for j, block in enumerate(case['run']):
                tasks += yaml_to_tasks(block.get('tasks') or [], f"{case_where} run[{j}]")
        else:
            tasks = yaml_to_tasks(case.get('tasks') or [], case_where)
        with _declaring(f"{case_where} when"):
            cases.append(SwitchCase(when=compile_value(case['when']), tasks=tasks))
    return tuple(cases)


def _catch(raw: Dict[str, Any], where: str) -> CatchSpec:
    payload = raw.get('payload')
    with _declaring(f"{where} catch"):
        return CatchSpec(
            var=raw.get('var', 'error'),
            tasks=yaml_to_tasks(raw.get('tasks') or [], f"{where} catch"),
            event=raw.get('raise'),
            payload=None if payload is None else compile_value(payload),
            rethrow=bool(raw.get('rethrow', False)),
        )


def _attributes(raw: Dict[str, Any], name: str) -> Any:
    """Annotation value from the ``"@"`` mapping or a plain key."""
    attrs = raw.get('@') or {}
    return attrs.get(name, raw.get(name))


def yaml_to_aspect(
    name: str,
    raw: Dict[str, Any],
    file_scope: Tuple = (),
    base_dir: Optional[Path] = None,
    source: Optional[str] = None,
) -> Aspect:
    """Convert a validated aspect definition to an Aspect.

    Attribute annotations are lowered to QueryAttributes / PollAttributes.
    """
    where = f"Aspect '{name}'"

    events = {}
    for event, decl in (raw.get('events') or {}).items():
        decl = decl or {}
        events[event] = EventType(event, decl.get('extends'), tuple(decl.get('fields', [])))

    fns = {}
    for fn, decl in (raw.get('fn') or {}).items():
        fns[fn] = FnDecl(fn, tuple(decl.get('params', [])),
                         yaml_to_tasks(decl.get('tasks') or [], f"{where} fn '{fn}'"))

    checks = {}
    for check, decl in (raw.get('checks') or {}).items():
        qualified = f'{name}.{check}'
        checks[check] = yaml_to_proc(qualified, normalize_check(decl), file_scope,
                                     base_dir, source)

    queries = {}
    for query, decl in (raw.get('queries') or {}).items():
        q_where = f"{where} query '{query}'"
        with _declaring(q_where):
            interval = _attributes(decl, 'cache_interval')
            attrs = QueryAttributes(
                None if interval is None else parse_duration(interval))
            result = None if decl.get('result') is None else compile_value(decl['result'])
        queries[query] = QueryDecl(
            query, tuple(decl.get('params', [])),
            yaml_to_tasks(decl.get('tasks') or [], q_where), result, attrs)

    polls = {}
    for poll, decl in (raw.get('polls') or {}).items():
        p_where = f"{where} poll '{poll}'"
        with _declaring(p_where):
            interval = _attributes(decl, 'interval')
            attrs = PollAttributes() if interval is None else PollAttributes(
                parse_duration(interval))
            extra = {} if decl.get('hosts') is None else {
                'hosts': compile_value(decl['hosts'])}
        polls[poll] = PollDecl(
            poll, tasks=yaml_to_tasks(decl.get('tasks') or [], p_where),
            attributes=attrs, **extra)

    handlers = []
    for event, decl in (raw.get('on') or {}).items():
        h_where = f"{where} on '{event}'"
        with _declaring(h_where):
            extra = {} if decl.get('hosts') is None else {
                'hosts': compile_value(decl['hosts'])}
        handlers.append(HandlerDecl(
            event, tasks=yaml_to_tasks(decl.get('tasks') or [], h_where), **extra))

    return Aspect(name, events, fns, checks, queries, polls, tuple(handlers),
                  tuple(file_scope), base_dir)
