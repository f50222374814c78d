"""Tests for converting declarations to procs and aspects."""

import pytest

pytest.importorskip("yaml")

from opflow.expr import StaticValue, revision_scope
from opflow.model import ModelTree
from opflow.proc import (
    CommandTask, ExecTask, ProcKind, RaiseTask, SwitchTask, TaskKind,
    TemplateTask, TryTask,
)
from opflow.yaml import (
    DeclarationError, declarations_to_aspects, declarations_to_procs,
    parse_declaration_string,
)


def procs(text, tmp_path):
    return declarations_to_procs(parse_declaration_string(text), tmp_path)


def aspects(text, tmp_path):
    return declarations_to_aspects(parse_declaration_string(text), tmp_path)


class TestProcConversion:
    """Tests for yaml_to_proc."""

    def test_update_proc(self, tmp_path):
        """Test an update proc with watches and a run block."""
        [proc] = procs("""
yum_update_add:
  proc: update
  label: Added packages
  watch:
    $$hosts.packages[*]: "+"
  watch_file:
    files/yum/*:
  run:
  - hosts: ${$$hosts[$$model_changes.new_path ^= @.@path + '.']}
    tasks:
    - task: exec
      exec: ${$$procs[@key == 'yum_install']}
""", tmp_path)
        assert proc.name == 'yum_update_add'
        assert proc.kind is ProcKind.UPDATE
        assert proc.label == 'Added packages'
        assert proc.watches[0].mask.operators == '+'
        assert proc.file_watches[0].pattern == 'files/yum/*'
        assert proc.file_watches[0].marker == '~'
        assert isinstance(proc.run[0].tasks[0], ExecTask)
        assert proc.base_dir == tmp_path.resolve()

    def test_default_hosts(self, tmp_path):
        """Test run blocks without hosts target every host."""
        [proc] = procs("""
p:
  proc: exec
  run:
  - tasks: []
""", tmp_path)
        scope = revision_scope(ModelTree({'hosts': {'a': {}, 'b': {}}}))
        assert [n.key for n in proc.run[0].hosts.resolve(scope)] == ['a', 'b']

    def test_file_scope_precedes_proc_scope(self, tmp_path):
        """Test file-level scope entries come first."""
        [proc] = procs("""
scope:
  domain: example.com
p:
  proc: exec
  scope:
    fqdn: "zeus.${$domain}"
  run: []
""", tmp_path)
        assert [name for name, _ in proc.scope] == ['domain', 'fqdn']

    def test_invalid_expression(self, tmp_path):
        """Test expression syntax errors name the proc."""
        with pytest.raises(DeclarationError, match="Proc 'p'"):
            procs("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[}
    tasks: []
""", tmp_path)

    def test_invalid_watch(self, tmp_path):
        """Test invalid watch operators are reported at load time."""
        with pytest.raises(DeclarationError, match='operator'):
            procs("""
p:
  proc: update
  watch: {$$hosts: "+?"}
  run: []
""", tmp_path)


class TestTaskConversion:
    """Tests for yaml_to_task."""

    def _tasks(self, tasks_yaml, tmp_path):
        text = "p:\n  proc: exec\n  run:\n  - tasks:\n" + ''.join(
            f"    {line}\n" for line in tasks_yaml.strip().splitlines())
        return procs(text, tmp_path)[0].run[0].tasks

    def test_parameters_join_scope(self, tmp_path):
        """Test inline parameters follow the scope entries."""
        [task] = self._tasks("""
- task: command
  id: hosts
  scope:
    src: /root/hosts
  cmd: cat ${$src}
  output: text
  run_as: root
""", tmp_path)
        assert isinstance(task, CommandTask)
        assert [name for name, _ in task.scope] == ['src', 'cmd']
        assert task.output.var == 'hosts'
        assert task.output.format == 'text'
        assert isinstance(task.run_as, StaticValue)

    def test_template_kind(self, tmp_path):
        """Test the template kind maps to TemplateTask."""
        [task] = self._tasks("""
- task: template
  source: "${$$host.hostname}"
  dst_path: /etc/motd
""", tmp_path)
        assert isinstance(task, TemplateTask)
        assert task.kind is TaskKind.TEMPLATE

    def test_switch_cases(self, tmp_path):
        """Test switch cases with tasks or run blocks."""
        [task] = self._tasks("""
- task: switch
  cases:
  - when: ${$$host.os == 'rhel'}
    tasks:
    - {task: command, cmd: yum check-update}
  - when: true
    run:
    - tasks:
      - {task: command, cmd: apt-get update}
""", tmp_path)
        assert isinstance(task, SwitchTask)
        assert len(task.cases) == 2
        assert task.cases[1].tasks[0].kind is TaskKind.COMMAND

    def test_try_catch(self, tmp_path):
        """Test try tasks and their catch section."""
        [task] = self._tasks("""
- task: try
  tasks:
  - {task: command, cmd: "false"}
  catch:
    var: failure
    raise: host_error
    payload: {message: "${$failure.message}"}
    rethrow: true
    tasks:
    - {task: command, cmd: "echo failed"}
""", tmp_path)
        assert isinstance(task, TryTask)
        assert task.catch.var == 'failure'
        assert task.catch.event == 'host_error'
        assert task.catch.rethrow is True
        assert len(task.catch.tasks) == 1

    def test_raise(self, tmp_path):
        """Test raise tasks keep the event and payload."""
        [task] = self._tasks("""
- task: raise
  event: unreachable
  payload: {host: "${$$host.hostname}"}
""", tmp_path)
        assert isinstance(task, RaiseTask)
        assert task.event == 'unreachable'
        assert task.payload is not None


class TestAspectConversion:
    """Tests for yaml_to_aspect."""

    def test_full_aspect(self, tmp_path):
        """Test every aspect section is converted."""
        [aspect] = aspects("""
aspects:
  hosts:
    events:
      host_error: {fields: [host, message]}
      unreachable: {extends: host_error}
    fn:
      restart:
        params: [service]
        tasks:
        - {task: command, cmd: "systemctl restart ${$service}"}
    checks:
      uptime:
        tasks:
        - {task: command, ro: true, cmd: uptime}
    queries:
      kernel:
        "@": {cache_interval: 1m}
        tasks:
        - {task: command, cmd: uname -r, output: {var: kernel, format: text}}
        result: ${$kernel}
    polls:
      ping:
        "@": {interval: 30s}
        tasks:
        - {task: command, cmd: "true"}
    on:
      host_error:
        tasks:
        - {task: command, cmd: "logger ${$event.message}"}
""", tmp_path)
        assert aspect.name == 'hosts'
        assert aspect.events['unreachable'].extends == 'host_error'
        assert aspect.events['host_error'].fields == ('host', 'message')
        assert aspect.fns['restart'].params == ('service',)
        assert aspect.checks['uptime'].name == 'hosts.uptime'
        assert aspect.checks['uptime'].kind is ProcKind.CHECK
        assert aspect.queries['kernel'].attributes.cache_interval == 60.0
        assert aspect.polls['ping'].attributes.interval == 30.0
        assert aspect.handlers[0].event == 'host_error'
        assert aspect.qualified('kernel') == 'hosts.kernel'

    def test_plain_attribute_keys(self, tmp_path):
        """Test attributes may be given without the '@' mapping."""
        [aspect] = aspects("""
aspects:
  hosts:
    queries:
      kernel:
        cache_interval: 5s
        tasks: []
    polls:
      ping:
        tasks: []
""", tmp_path)
        assert aspect.queries['kernel'].attributes.cache_interval == 5.0
        assert aspect.queries['kernel'].result is None
        assert aspect.polls['ping'].attributes.interval == 60.0

    def test_invalid_duration(self, tmp_path):
        """Test invalid intervals raise DeclarationError."""
        with pytest.raises(DeclarationError, match="poll 'ping'"):
            aspects("""
aspects:
  hosts:
    polls:
      ping:
        "@": {interval: often}
        tasks: []
""", tmp_path)
