"""YAML parsing and validation of proc and aspect declarations.

Two layouts are accepted. The flat layout maps proc names directly, with
an optional file-level ``scope``::

    scope:
      work_dir: /srv/model
    updates:
      proc: update
      watch: {$$hosts.hostname: +-*}
      run: [...]

The structured layout groups everything under explicit sections::

    config: {max_host_workers: 16}
    scope: {...}
    procs:
      updates: {proc: update, ...}
    aspects:
      hosts: {events: ..., fn: ..., queries: ...}

This module only checks structure; values and expressions are compiled
by the converter.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from opflow.exceptions import OpflowError
from opflow.proc import OUTPUT_FORMATS, ProcKind, TaskKind

PROC_KINDS = {k.value for k in ProcKind}
TASK_KINDS = {k.value for k in TaskKind}

# Parameters that may be written next to ``task:`` instead of in its scope.
PARAMETER_KEYS = {
    'cmd', 'args', 'src_path', 'source', 'interpreter', 'dst_path', 'chown',
    'chmod', 'process', 'vars', 'message', 'exec',
}
COMMON_TASK_KEYS = {
    'task', 'kind', 'id', 'label', 'scope', 'ro', 'output', 'run_as', 'env',
}
TASK_KEYS = {
    'switch': {'cases'},
    'try': {'tasks', 'catch'},
    'raise': {'event', 'payload'},
    'call': {'fn'},
    'query': {'query'},
}
PROC_KEYS = {'proc', 'label', 'watch', 'watch_file', 'run', 'scope'}
ASPECT_SECTIONS = {'events', 'fn', 'checks', 'queries', 'polls', 'on'}


@dataclass
class DeclarationFile:
    """Parsed (but not yet compiled) declaration file."""
    path: Optional[Path] = None
    config: Dict[str, Any] = field(default_factory=dict)
    scope: Dict[str, Any] = field(default_factory=dict)
    procs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    aspects: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return str(self.path) if self.path is not None else '<string>'


class DeclarationError(OpflowError):
    """Error parsing or validating a declaration file."""


class DeclarationLoader(yaml.SafeLoader):
    """SafeLoader that reads only true/false as booleans.

    YAML 1.1 also reads on/off/yes/no as booleans, which would turn the
    aspect section ``on:`` into the key True.
    """


DeclarationLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers
            if tag != 'tag:yaml.org,2002:bool']
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
DeclarationLoader.add_implicit_resolver(
    'tag:yaml.org,2002:bool',
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list('tTfF'))


def parse_declaration_file(path: Union[str, Path]) -> DeclarationFile:
    """Parse and validate a declaration file.

    Args:
        path: Path to the YAML file

    Returns:
        DeclarationFile with raw config, scope, procs and aspects

    Raises:
        DeclarationError: If the file is invalid
        FileNotFoundError: If the file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Declaration file not found: {path}")

    with open(path) as f:
        try:
            data = yaml.load(f, Loader=DeclarationLoader)
        except yaml.YAMLError as e:
            raise DeclarationError(f"{path}: invalid YAML syntax: {e}") from e

    return _validate_declarations(data, path)


def parse_declaration_string(content: str,
                             path: Optional[Path] = None) -> DeclarationFile:
    """Parse declarations from a string.

    Args:
        content: YAML content
        path: File the content came from, used for relative paths and
              error messages

    Returns:
        DeclarationFile with raw config, scope, procs and aspects
    """
    try:
        data = yaml.load(content, Loader=DeclarationLoader)
    except yaml.YAMLError as e:
        raise DeclarationError(f"Invalid YAML syntax: {e}") from e

    return _validate_declarations(data, path)


def _is_structured(data: Dict[str, Any]) -> bool:
    for section in ('procs', 'aspects'):
        value = data.get(section)
        if isinstance(value, dict) and 'proc' not in value:
            return True
    return False


def _validate_declarations(data: Any, path: Optional[Path]) -> DeclarationFile:
    """Validate parsed YAML data structure.

    Raises:
        DeclarationError: If validation fails
    """
    result = DeclarationFile(path=path)
    if data is None:
        return result
    if not isinstance(data, dict):
        raise DeclarationError(f"{result.source}: YAML root must be a mapping")

    for section in ('config', 'scope'):
        value = data.get(section)
        if value is None:
            continue
        if not isinstance(value, dict):
            raise DeclarationError(f"{result.source}: '{section}' must be a mapping")
        setattr(result, section, value)

    if _is_structured(data):
        unknown = sorted(set(data) - {'config', 'scope', 'procs', 'aspects'})
        if unknown:
            raise DeclarationError(
                f"{result.source}: unknown top-level keys: {', '.join(unknown)}")
        procs = data.get('procs') or {}
        aspects = data.get('aspects') or {}
        if not isinstance(procs, dict):
            raise DeclarationError(f"{result.source}: 'procs' must be a mapping")
        if not isinstance(aspects, dict):
            raise DeclarationError(f"{result.source}: 'aspects' must be a mapping")
    else:
        procs = {k: v for k, v in data.items() if k not in ('config', 'scope')}
        aspects = {}

    for name, proc in procs.items():
        result.procs[str(name)] = _validate_proc(str(name), proc)
    for name, aspect in aspects.items():
        result.aspects[str(name)] = _validate_aspect(str(name), aspect)
    return result


def _validate_proc(name: str, proc: Any, kind: Optional[str] = None) -> Dict[str, Any]:
    """Validate a single proc definition.

    Args:
        name: Proc name (for error messages)
        proc: Proc dictionary
        kind: Kind imposed by the enclosing section, if any

    Returns:
        Validated proc dictionary

    Raises:
        DeclarationError: If validation fails
    """
    if not isinstance(proc, dict):
        raise DeclarationError(f"Proc '{name}' must be a mapping")

    unknown = sorted(set(proc) - PROC_KEYS)
    if unknown:
        raise DeclarationError(f"Proc '{name}': unknown keys: {', '.join(unknown)}")

    proc_kind = proc.get('proc', kind)
    if proc_kind not in PROC_KINDS:
        raise DeclarationError(
            f"Proc '{name}' has invalid kind {proc_kind!r}. "
            f"Valid kinds: {', '.join(sorted(PROC_KINDS))}"
        )
    if kind is not None and proc_kind != kind:
        raise DeclarationError(f"Proc '{name}' must be of kind '{kind}'")

    if 'label' in proc and not isinstance(proc['label'], (str, type(None))):
        raise DeclarationError(f"Proc '{name}': 'label' must be a string")
    if proc.get('scope') is not None and not isinstance(proc['scope'], dict):
        raise DeclarationError(f"Proc '{name}': 'scope' must be a mapping")

    for section in ('watch', 'watch_file'):
        watch = proc.get(section)
        if watch is None:
            continue
        if not isinstance(watch, dict):
            raise DeclarationError(f"Proc '{name}': '{section}' must be a mapping")
        for pattern, ops in watch.items():
            if ops is None and section == 'watch_file':
                continue
            if not isinstance(ops, str):
                raise DeclarationError(
                    f"Proc '{name}': {section} entry {pattern!r} must map to "
                    f"an operator string such as '+-*'"
                )

    if proc_kind == ProcKind.UPDATE.value and not (proc.get('watch') or proc.get('watch_file')):
        raise DeclarationError(
            f"Proc '{name}': update procs require 'watch' or 'watch_file'")
    if proc_kind != ProcKind.UPDATE.value and (proc.get('watch') or proc.get('watch_file')):
        raise DeclarationError(
            f"Proc '{name}': only update procs may declare watches")

    run = proc.get('run')
    if run is None:
        raise DeclarationError(f"Proc '{name}' missing required field 'run'")
    if not isinstance(run, list):
        raise DeclarationError(f"Proc '{name}': 'run' must be a list")
    for i, block in enumerate(run):
        _validate_run_block(block, f"proc '{name}' run[{i}]")

    return proc


def _validate_run_block(block: Any, where: str, allow_hosts: bool = True) -> None:
    if not isinstance(block, dict):
        raise DeclarationError(f"{where} must be a mapping")
    allowed = {'hosts', 'tasks'} if allow_hosts else {'tasks'}
    unknown = sorted(set(block) - allowed)
    if unknown:
        raise DeclarationError(f"{where}: unknown keys: {', '.join(unknown)}")
    _validate_tasks(block.get('tasks'), where)


def _validate_tasks(tasks: Any, where: str, ro: bool = False) -> None:
    if not isinstance(tasks, list):
        raise DeclarationError(f"{where}: 'tasks' must be a list")
    for i, task in enumerate(tasks):
        _validate_task(task, f"{where} task {i}", ro)


def _task_label(task: Dict[str, Any], where: str) -> str:
    ident = task.get('id') or task.get('label')
    return f"{where} ('{ident}')" if ident else where


def _validate_task(task: Any, where: str, ro: bool = False) -> None:
    """Validate a single task definition.

    Raises:
        DeclarationError: If validation fails
    """
    if not isinstance(task, dict):
        raise DeclarationError(f"{where} must be a mapping")
    kind = task.get('task', task.get('kind'))
    where = _task_label(task, where)
    if kind not in TASK_KINDS:
        raise DeclarationError(
            f"{where} has invalid kind {kind!r}. "
            f"Valid kinds: {', '.join(sorted(TASK_KINDS))}"
        )

    allowed = COMMON_TASK_KEYS | PARAMETER_KEYS | TASK_KEYS.get(kind, set())
    unknown = sorted(set(task) - allowed)
    if unknown:
        raise DeclarationError(f"{where}: unknown keys: {', '.join(unknown)}")

    scope = task.get('scope')
    if scope is not None and not isinstance(scope, dict):
        raise DeclarationError(f"{where}: 'scope' must be a mapping")
    params = dict(scope or {})
    params.update({k: v for k, v in task.items() if k in PARAMETER_KEYS})

    if 'ro' in task and not isinstance(task['ro'], bool):
        raise DeclarationError(f"{where}: 'ro' must be a boolean")
    ro = ro or task.get('ro', False)
    if ro and TaskKind(kind).mutates:
        raise DeclarationError(f"{where}: '{kind}' task cannot be read-only")

    _validate_output(task, where)

    if kind == 'command' and 'cmd' not in params:
        raise DeclarationError(f"{where}: command task requires 'cmd'")
    if kind == 'script' and 'src_path' not in params and 'source' not in params:
        raise DeclarationError(f"{where}: script task requires 'src_path' or 'source'")
    if kind in ('file-copy', 'template'):
        if 'dst_path' not in params:
            raise DeclarationError(f"{where}: {kind} task requires 'dst_path'")
        if 'src_path' not in params and 'source' not in params:
            raise DeclarationError(f"{where}: {kind} task requires 'src_path' or 'source'")
    if kind == 'exec' and 'exec' not in params:
        raise DeclarationError(f"{where}: exec task requires an 'exec' binding")
    if kind == 'switch':
        _validate_cases(task.get('cases'), where, ro)
    if kind == 'try':
        _validate_tasks(task.get('tasks'), where, ro)
        _validate_catch(task.get('catch'), where, ro)
    if kind == 'raise':
        if not isinstance(task.get('event'), str):
            raise DeclarationError(f"{where}: raise task requires an 'event' name")
        if task.get('payload') is not None and not isinstance(task['payload'], dict):
            raise DeclarationError(f"{where}: 'payload' must be a mapping")
    for ref_kind, ref in (('call', 'fn'), ('query', 'query')):
        if kind == ref_kind and not isinstance(task.get(ref), str):
            raise DeclarationError(f"{where}: {kind} task requires a '{ref}' name")


def _validate_output(task: Dict[str, Any], where: str) -> None:
    output = task.get('output')
    if output is None:
        return
    if isinstance(output, str):
        if output not in OUTPUT_FORMATS:
            raise DeclarationError(f"{where}: unknown output format {output!r}")
        if not task.get('id'):
            raise DeclarationError(
                f"{where}: short output form needs an 'id' to bind the output to")
        return
    if not isinstance(output, dict) or not isinstance(output.get('var'), str):
        raise DeclarationError(f"{where}: 'output' must be a format or {{var, format}}")
    fmt = output.get('format')
    if fmt is not None and fmt not in OUTPUT_FORMATS:
        raise DeclarationError(f"{where}: unknown output format {fmt!r}")


def _validate_cases(cases: Any, where: str, ro: bool) -> None:
    if not isinstance(cases, list):
        raise DeclarationError(f"{where}: 'cases' must be a list")
    for i, case in enumerate(cases):
        case_where = f"{where} case {i}"
        if not isinstance(case, dict) or 'when' not in case:
            raise DeclarationError(f"{case_where} must be a mapping with 'when'")
        unknown = sorted(set(case) - {'when', 'tasks', 'run'})
        if unknown:
            raise DeclarationError(f"{case_where}: unknown keys: {', '.join(unknown)}")
        if 'run' in case:
            if not isinstance(case['run'], list):
                raise DeclarationError(f"{case_where}: 'run' must be a list")
            for j, block in enumerate(case['run']):
                _validate_run_block(block, f"{case_where} run[{j}]", allow_hosts=False)
        else:
            _validate_tasks(case.get('tasks', []), case_where, ro)


def _validate_catch(catch: Any, where: str, ro: bool) -> None:
    if catch is None:
        return
    if not isinstance(catch, dict):
        raise DeclarationError(f"{where}: 'catch' must be a mapping")
    unknown = sorted(set(catch) - {'var', 'tasks', 'raise', 'payload', 'rethrow'})
    if unknown:
        raise DeclarationError(f"{where}: catch has unknown keys: {', '.join(unknown)}")
    if 'var' in catch and not isinstance(catch['var'], str):
        raise DeclarationError(f"{where}: catch 'var' must be a string")
    if 'raise' in catch and not isinstance(catch['raise'], str):
        raise DeclarationError(f"{where}: catch 'raise' must be an event name")
    if 'rethrow' in catch and not isinstance(catch['rethrow'], bool):
        raise DeclarationError(f"{where}: catch 'rethrow' must be a boolean")
    if catch.get('payload') is not None and not isinstance(catch['payload'], dict):
        raise DeclarationError(f"{where}: catch 'payload' must be a mapping")
    _validate_tasks(catch.get('tasks', []), f"{where} catch", ro)


def _validate_aspect(name: str, aspect: Any) -> Dict[str, Any]:
    """Validate an aspect definition.

    Raises:
        DeclarationError: If validation fails
    """
    if not isinstance(aspect, dict):
        raise DeclarationError(f"Aspect '{name}' must be a mapping")
    unknown = sorted(set(aspect) - ASPECT_SECTIONS)
    if unknown:
        raise DeclarationError(f"Aspect '{name}': unknown sections: {', '.join(unknown)}")
    for section in ASPECT_SECTIONS:
        members = aspect.get(section)
        if members is not None and not isinstance(members, dict):
            raise DeclarationError(f"Aspect '{name}': '{section}' must be a mapping")

    for event, decl in (aspect.get('events') or {}).items():
        decl = decl or {}
        if not isinstance(decl, dict):
            raise DeclarationError(f"Aspect '{name}': event '{event}' must be a mapping")
        if decl.get('extends') is not None and not isinstance(decl['extends'], str):
            raise DeclarationError(f"Aspect '{name}': event '{event}' 'extends' must be a name")
        fields = decl.get('fields', [])
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            raise DeclarationError(f"Aspect '{name}': event '{event}' 'fields' must be a list of names")

    for section, extra in (('fn', {'params'}), ('queries', {'params', 'result', 'cache_interval'}),
                           ('polls', {'hosts', 'interval'}), ('on', {'hosts'})):
        for member, decl in (aspect.get(section) or {}).items():
            where = f"aspect '{name}' {section} '{member}'"
            if not isinstance(decl, dict):
                raise DeclarationError(f"{where} must be a mapping")
            unknown = sorted(set(decl) - ({'tasks', '@'} | extra))
            if unknown:
                raise DeclarationError(f"{where}: unknown keys: {', '.join(unknown)}")
            if '@' in decl and not isinstance(decl['@'], dict):
                raise DeclarationError(f"{where}: attributes '@' must be a mapping")
            params = decl.get('params', [])
            if not isinstance(params, list) or not all(isinstance(p, str) for p in params):
                raise DeclarationError(f"{where}: 'params' must be a list of names")
            ro = section == 'queries'
            _validate_tasks(decl.get('tasks'), where, ro)

    for member, decl in (aspect.get('checks') or {}).items():
        _validate_proc(f"{name}.{member}", normalize_check(decl), kind='check')
    return aspect


def list_declaration_files(root: Union[str, Path]) -> List[Path]:
    """List ``*.yaml`` / ``*.yml`` files under ``root`` in sorted order."""
    root = Path(root)
    if root.is_file():
        return [root]
    files = [p for p in root.rglob('*') if p.suffix in ('.yaml', '.yml') and p.is_file()]
    return sorted(files)


def normalize_check(decl: Any) -> Any:
    """Aspect checks may omit ``proc:`` and list ``tasks`` directly."""
    if not isinstance(decl, dict):
        return decl
    decl = dict(decl)
    decl.setdefault('proc', 'check')
    if 'tasks' in decl and 'run' not in decl:
        decl['run'] = [{'tasks': decl.pop('tasks')}]
    return decl
