"""Tests for TaskTreeExecutor."""

from unittest.mock import MagicMock

import pytest

pytest.importorskip("yaml")

from opflow.config import EngineConfig
from opflow.exceptions import (
    DelegationError, ExpressionError, OpflowError, RemoteExecutionError,
    UnknownProcError, ValidationError,
)
from opflow.exec import (
    CommandRequest, CommandResult, DryRunExecutor, EventDelivery, FileCopyRequest,
    Host, HostStatus, ScriptRequest, TaskOutcome, TaskTreeExecutor,
)
from opflow.expr import compile_value, revision_scope
from opflow.model import ModelTree, NodeRef
from opflow.reactive import QueryCache
from opflow.yaml import load_string

MODEL = ModelTree({
    'hosts': {
        'zeus': {'hostname': 'zeus', 'ip': '10.0.0.1', 'os': 'rhel'},
        'hera': {'hostname': 'hera', 'ip': '10.0.0.2', 'os': 'debian'},
    },
})


def make_bus():
    bus = MagicMock()
    bus.publish.return_value = [EventDelivery('host_error', 'recorder')]
    return bus


def build(text, capability=None, base_dir=None, **kwargs):
    registry = load_string(text, base_dir=base_dir).registry
    return TaskTreeExecutor(registry, capability or DryRunExecutor(), **kwargs)


def scope_for(executor, tree=MODEL):
    return revision_scope(tree, procs=executor.registry.nodes())


def run(executor, name='p', tree=MODEL, **kwargs):
    return executor.run_proc(executor.registry.get(name), scope_for(executor, tree),
                             **kwargs)


def cmds(dry, host=None):
    requests = dry.requests() if host is None else dry.requests_for(host)
    return [r.cmd for r in requests]


class TestHostIsolation:
    """Tests for per-host task lists."""

    PROC = """
p:
  proc: exec
  run:
  - tasks:
    - {task: command, cmd: first}
    - {task: command, cmd: second}
    - {task: command, cmd: third}
"""

    def test_failure_stops_only_that_host(self):
        """Test a failing task skips the rest of its host's list only."""
        dry = DryRunExecutor(results={
            ('zeus', 'second'): CommandResult(stderr='boom', exit_code=2),
        })
        report = run(build(self.PROC, dry))

        zeus = report.host('zeus')
        assert zeus.status is HostStatus.FAILED
        assert zeus.failed_index == 1
        assert [t.outcome for t in zeus.tasks] == [
            TaskOutcome.COMPLETED, TaskOutcome.FAILED, TaskOutcome.SKIPPED]
        assert zeus.tasks[1].exit_code == 2
        assert zeus.tasks[1].stderr == 'boom'
        assert isinstance(zeus.error, RemoteExecutionError)
        assert cmds(dry, 'zeus') == ['first', 'second']

        hera = report.host('hera')
        assert hera.status is HostStatus.COMPLETED
        assert cmds(dry, 'hera') == ['first', 'second', 'third']
        assert report.status is HostStatus.FAILED

    def test_hosts_in_selection_order(self):
        """Test host reports follow the hosts expression order."""
        report = run(build(self.PROC))
        assert [h.host for h in report.hosts] == ['zeus', 'hera']
        assert report.status is HostStatus.COMPLETED
        assert all(h.current_index is None for h in report.hosts)

    def test_capability_exception_is_wrapped(self):
        """Test unexpected transport errors become RemoteExecutionError."""
        def responder(host, request):
            raise RuntimeError('connection reset')

        report = run(build(self.PROC, DryRunExecutor(responder=responder)))
        assert all(isinstance(h.error, RemoteExecutionError) for h in report.hosts)
        assert 'connection reset' in str(report.host('zeus').error)


class TestRunBlocks:
    """Tests for several run blocks."""

    PROC = """
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: exec, exec: missing}
  - tasks:
    - {task: command, cmd: deploy}
"""

    def test_failed_hosts_skip_later_blocks(self):
        """Test a host that failed in one block is skipped in the next."""
        dry = DryRunExecutor()
        report = run(build(self.PROC, dry))
        assert report.host('zeus', 0).failed
        assert report.host('zeus', 1).status is HostStatus.SKIPPED
        assert report.host('hera', 1).status is HostStatus.COMPLETED
        assert dry.hosts() == ['hera']

    def test_fail_fast(self):
        """Test fail_fast skips every host after a non-recoverable error."""
        dry = DryRunExecutor()
        report = run(build(self.PROC, dry, config=EngineConfig(fail_fast=True)))
        assert report.host('hera', 1).status is HostStatus.SKIPPED
        assert dry.requests() == []

    def test_missing_host_report(self):
        """Test asking for a host that did not run."""
        report = run(build(self.PROC))
        with pytest.raises(KeyError):
            report.host('hera', 0)

    def test_non_mapping_hosts(self):
        """Test hosts expressions must select mappings."""
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts.hostname}
    tasks: []
"""))
        assert isinstance(report.error, ExpressionError)
        assert report.failed
        assert report.hosts == []


class TestResolveHosts:
    """Tests for host selection."""

    def test_duplicates_removed(self):
        """Test the same entry selected twice runs once."""
        executor = build("p: {proc: exec, run: []}")
        hosts = executor.resolve_hosts(
            compile_value('${$$model.hosts.(zeus,hera,zeus)}'), scope_for(executor))
        assert [h.name for h in hosts] == ['zeus', 'hera']
        assert hosts[0].address == '10.0.0.1'

    def test_detached_host(self):
        """Test computed host mappings are named by hostname."""
        host = Host.from_node(NodeRef.detached({'hostname': 'box', 'ip6': '::1'}))
        assert host.name == 'box'
        assert host.address == '::1'


class TestLeafTasks:
    """Tests for command, script and file-copy tasks."""

    def test_command_parameters(self):
        """Test args, env and run_as reach the request."""
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: command
      cmd: useradd
      args: [-m, "${$$host.hostname}"]
      env: {LANG: C, HOST: "${$$host.ip}"}
      run_as: root
    - task: command
      cmd: echo
      args: 'a "b c"'
""", dry))
        first, second = dry.requests()
        assert first == CommandRequest(
            cmd='useradd', args=('-m', 'zeus'),
            env={'LANG': 'C', 'HOST': '10.0.0.1'}, run_as='root')
        assert second.args == ('a', 'b c')

    def test_env_must_be_mapping(self):
        """Test a scalar env is an error."""
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: command, cmd: env, env: plain}
"""))
        assert all(isinstance(h.error, ExpressionError) for h in report.hosts)

    def test_inline_script(self):
        """Test script tasks with inline source."""
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: script
      source: "echo hi\\n"
      interpreter: /bin/bash
      args: [one, two]
""", dry))
        assert dry.requests() == [ScriptRequest(
            source='echo hi\n', interpreter='/bin/bash', args=('one', 'two'))]

    def test_script_from_file(self, tmp_path):
        """Test src_path is read relative to the declaring directory."""
        (tmp_path / 'yum-install.sh').write_text('yum install -y "$@"\n')
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: script, src_path: yum-install.sh, args: curl}
""", dry, base_dir=tmp_path))
        [request] = dry.requests()
        assert request.src_path == 'yum-install.sh'
        assert request.source == 'yum install -y "$@"\n'
        assert request.args == ('curl',)

    def test_missing_script_file(self, tmp_path):
        """Test unreadable scripts fail the host."""
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: script, src_path: nope.sh}
""", base_dir=tmp_path))
        assert isinstance(report.host('zeus').error, ValidationError)

    def test_template(self, tmp_path):
        """Test templates render with only their vars."""
        (tmp_path / 'motd.tmpl').write_text('host ${$name} (${$$host.ip})\n')
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: template
      src_path: motd.tmpl
      dst_path: /etc/motd
      vars: {name: "${$$host.hostname}"}
      chmod: 0644
      chown: root:root
""", dry, base_dir=tmp_path))
        [request] = dry.requests()
        assert isinstance(request, FileCopyRequest)
        assert request.content == 'host zeus ()\n'
        assert request.templated
        assert request.chmod == '0644'
        assert request.chown == 'root:root'

    def test_plain_copy(self, tmp_path):
        """Test file-copy without processing keeps the content."""
        (tmp_path / 'hosts').write_text('127.0.0.1 localhost ${not-a-template}\n')
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: file-copy, src_path: hosts, dst_path: /etc/hosts}
""", dry, base_dir=tmp_path))
        [request] = dry.requests()
        assert request.content == '127.0.0.1 localhost ${not-a-template}\n'
        assert not request.templated

    def test_failed_copy(self):
        """Test a failed materialization fails the host."""
        dry = DryRunExecutor(results={'/etc/motd': CommandResult(exit_code=1)})
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: file-copy, source: hello, dst_path: /etc/motd}
""", dry))
        assert isinstance(report.host('hera').error, RemoteExecutionError)


class TestReadOnly:
    """Tests for read-only contexts."""

    PROC = """
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: command, cmd: uptime}
    - {task: file-copy, source: x, dst_path: /etc/x}
"""

    def test_read_only_run_rejects_copies(self):
        """Test a read-only run fails on the first file copy."""
        dry = DryRunExecutor()
        report = run(build(self.PROC, dry), ro=True)
        zeus = report.host('zeus')
        assert isinstance(zeus.error, ValidationError)
        assert zeus.failed_index == 1
        assert dry.requests()[0].read_only
        assert len(dry.requests()) == 1

    def test_task_level_ro(self):
        """Test ro on a task marks its requests read-only."""
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: command, cmd: uptime, ro: true}
    - {task: command, cmd: reboot}
""", dry))
        assert [r.read_only for r in dry.requests()] == [True, False]


class TestOutputCapture:
    """Tests for binding task output."""

    def test_json_output_feeds_next_task(self):
        """Test parsed output is visible to later siblings."""
        dry = DryRunExecutor(results={
            'list-packages': CommandResult(stdout='["curl", "vim"]\n'),
        })
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: command, id: pkgs, cmd: list-packages, output: json}
    - {task: command, cmd: "install ${$pkgs.join(' ')}"}
""", dry))
        assert cmds(dry) == ['list-packages', 'install curl vim']
        assert report.host('zeus').tasks[0].stdout == '["curl", "vim"]\n'

    def test_invalid_output(self):
        """Test unparsable output fails the task."""
        dry = DryRunExecutor(results={'list': CommandResult(stdout='{oops')})
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: command, cmd: list, output: {var: data, format: json}}
""", dry))
        assert isinstance(report.host('zeus').error, ValidationError)

    def test_unaddressable_output_fails_capturing_task(self):
        """Test YAML dates fail the task that captured them."""
        dry = DryRunExecutor(results={'release': CommandResult(stdout='date: 2024-01-02\n')})
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: command, cmd: release, output: {var: rel, format: yaml}}
    - {task: command, cmd: "tag ${$rel.date}"}
""", dry))
        zeus = report.host('zeus')
        assert zeus.failed_index == 0
        assert isinstance(zeus.error, ValidationError)
        assert zeus.error.recoverable
        assert cmds(dry) == ['release']

    def test_output_bound_inside_block_stays_in_block(self):
        """Test output captured in a switch case or try body ends with it."""
        dry = DryRunExecutor(results={'version': CommandResult(stdout='{"v": "2"}\n')})
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: switch
      cases:
      - when: true
        tasks:
        - {task: command, cmd: version, output: {var: ver, format: json}}
        - {task: command, cmd: "inner ${$ver.v}"}
    - task: try
      tasks:
      - {task: command, cmd: version, output: {var: tried, format: json}}
    - {task: command, cmd: "after ${$ver.v}${$tried.v}"}
""", dry))
        assert cmds(dry) == ['version', 'inner 2', 'version', 'after ']


class TestControlFlow:
    """Tests for switch, try, throw and raise."""

    TRY = """
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: try
      id: guarded
      tasks:
      - {task: command, cmd: flaky}
      catch:
        rethrow: %s
        tasks:
        - {task: command, cmd: "cleanup ${$error.exit_code} ${$error.host}"}
    - {task: command, cmd: after}
"""

    def test_switch_first_match(self):
        """Test the first true case runs."""
        dry = DryRunExecutor()
        run(build("""
p:
  proc: exec
  run:
  - tasks:
    - task: switch
      cases:
      - when: ${$$host.os == 'rhel'}
        tasks:
        - {task: command, cmd: yum makecache}
      - when: true
        tasks:
        - {task: command, cmd: apt-get update}
""", dry))
        assert cmds(dry, 'zeus') == ['yum makecache']
        assert cmds(dry, 'hera') == ['apt-get update']

    def test_switch_requires_boolean(self):
        """Test non-boolean conditions are errors."""
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - task: switch
      cases:
      - when: ${$$host.os}
        tasks: []
"""))
        assert all(isinstance(h.error, ExpressionError) for h in report.hosts)

    def test_try_recovers(self):
        """Test a caught error runs the handler and continues."""
        dry = DryRunExecutor(results={'flaky': CommandResult(exit_code=3)})
        report = run(build(self.TRY % 'false', dry))
        zeus = report.host('zeus')
        assert cmds(dry) == ['flaky', 'cleanup 3 zeus', 'after']
        assert zeus.status is HostStatus.RECOVERED
        assert len(zeus.warnings) == 1
        assert zeus.tasks[0].outcome is TaskOutcome.RECOVERED
        assert [c.outcome for c in zeus.tasks[0].children] == [
            TaskOutcome.FAILED, TaskOutcome.COMPLETED]
        assert report.status is HostStatus.RECOVERED

    def test_try_rethrow(self):
        """Test rethrow fails the host after the handler."""
        dry = DryRunExecutor(results={'flaky': CommandResult(exit_code=3)})
        report = run(build(self.TRY % 'true', dry))
        assert cmds(dry) == ['flaky', 'cleanup 3 zeus']
        assert report.host('zeus').failed

    def test_try_ignores_non_recoverable(self):
        """Test unknown procs are not caught."""
        dry = DryRunExecutor()
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: try
      tasks:
      - {task: exec, exec: missing}
      catch:
        tasks:
        - {task: command, cmd: cleanup}
""", dry))
        assert isinstance(report.host('zeus').error, UnknownProcError)
        assert dry.requests() == []

    def test_throw(self):
        """Test throw fails with its message."""
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - {task: throw, message: "unsupported os ${$$host.os}"}
"""))
        error = report.host('zeus').error
        assert isinstance(error, ValidationError)
        assert str(error) == 'unsupported os rhel'

    def test_raise_publishes(self):
        """Test raise tasks publish with the host filled in."""
        bus = make_bus()
        report = run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: raise
      event: host_error
      payload: {message: disk full}
""", events=bus))
        bus.publish.assert_called_once_with(
            'host_error', {'message': 'disk full', 'host': 'zeus'})
        assert report.host('zeus').deliveries[0].handler == 'recorder'

    def test_raise_without_bus(self):
        """Test raise fails when no event bus is attached."""
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: raise, event: host_error}
"""))
        assert all(type(h.error) is OpflowError for h in report.hosts)

    def test_catch_publishes_error(self):
        """Test catch handlers can publish the caught error."""
        bus = make_bus()
        dry = DryRunExecutor(results={'flaky': CommandResult(exit_code=1)})
        run(build("""
p:
  proc: exec
  run:
  - hosts: ${$$hosts[@key == 'zeus']}
    tasks:
    - task: try
      tasks:
      - {task: command, cmd: flaky}
      catch:
        raise: host_error
        payload: {severity: high}
""", dry, events=bus))
        bus.publish.assert_called_once()
        event, payload = bus.publish.call_args.args
        assert event == 'host_error'
        assert payload['type'] == 'RemoteExecutionError'
        assert payload['host'] == 'zeus'
        assert payload['severity'] == 'high'


class TestDelegation:
    """Tests for exec tasks."""

    PROCS = """
p:
  proc: exec
  run:
  - tasks:
    - task: exec
      scope:
        exec: ${$$procs[@key == 'install']}
        target: ${$$host}
        pkgs: [curl, "${$$host.os}"]
install:
  proc: exec
  run:
  - hosts: ${$target}
    tasks:
    - {task: command, cmd: install, args: "${$pkgs}"}
"""

    def test_overrides_reach_callee(self):
        """Test exec scope entries become callee bindings."""
        dry = DryRunExecutor()
        report = run(build(self.PROCS, dry))
        assert dry.requests_for('zeus')[0].args == ('curl', 'rhel')
        assert dry.requests_for('hera')[0].args == ('curl', 'debian')
        delegated = report.host('zeus').tasks[0].delegated
        assert delegated.proc == 'install'
        assert [h.host for h in delegated.hosts] == ['zeus']

    def test_callee_failure(self):
        """Test a failing callee fails the delegating host."""
        dry = DryRunExecutor(results={('hera', 'install'): CommandResult(exit_code=1)})
        report = run(build(self.PROCS, dry))
        hera = report.host('hera')
        assert isinstance(hera.error, DelegationError)
        assert hera.error.recoverable
        assert report.host('zeus').status is HostStatus.COMPLETED

    def test_depth_limit(self):
        """Test runaway delegation stops at max_exec_depth."""
        tree = ModelTree({'hosts': {'zeus': {'hostname': 'zeus'}}})
        executor = build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: exec, exec: loop}
loop:
  proc: exec
  run:
  - hosts: ${$$host}
    tasks:
    - {task: exec, exec: loop}
""", config=EngineConfig(max_exec_depth=3))
        report = run(executor, tree=tree)
        error = report.host('zeus').error
        assert isinstance(error, DelegationError)
        assert 'deeper than 3 levels' in str(error)

    def test_target_must_be_exec_proc(self):
        """Test exec only delegates to exec procs."""
        report = run(build("""
p:
  proc: exec
  run:
  - tasks:
    - {task: exec, exec: c}
c:
  proc: check
  run: []
"""))
        assert isinstance(report.host('zeus').error, UnknownProcError)


class TestAspectMembers:
    """Tests for call and query tasks."""

    DECLS = """
procs:
  p:
    proc: exec
    run:
    - hosts: ${$$hosts[@key == 'zeus']}
      tasks:
      - task: call
        fn: hosts.restart
        scope: %s
aspects:
  hosts:
    fn:
      restart:
        params: [service]
        tasks:
        - {task: command, cmd: "systemctl restart ${$service} on ${$$host.hostname}"}
    queries:
      kernel:
        "@": {cache_interval: 1m}
        tasks:
        - {task: command, cmd: uname -r, output: {var: release, format: text}}
        result: ${$release}
"""

    def test_call(self):
        """Test fn arguments are bound in the fn body."""
        dry = DryRunExecutor()
        run(build(self.DECLS % '{service: sshd}', dry))
        assert cmds(dry) == ['systemctl restart sshd on zeus']

    @pytest.mark.parametrize('args', ['{}', '{service: sshd, force: true}'])
    def test_call_arguments_checked(self, args):
        """Test missing and unknown fn arguments."""
        report = run(build(self.DECLS % args))
        assert isinstance(report.host('zeus').error, ExpressionError)

    def test_call_fn_directly(self):
        """Test call_fn outside a proc."""
        dry = DryRunExecutor()
        executor = build(self.DECLS % '{service: x}', dry)
        zeus = Host.from_node(MODEL.node('hosts.zeus'))
        report = executor.call_fn('restart', zeus, scope_for(executor), {'service': 'ntpd'})
        assert report.status is HostStatus.COMPLETED
        assert cmds(dry) == ['systemctl restart ntpd on zeus']

    def test_query_task(self):
        """Test query results bind to the task id and run read-only."""
        dry = DryRunExecutor(results={'uname -r': CommandResult(stdout='6.1.0\n')})
        executor = build("""
procs:
  p:
    proc: exec
    run:
    - hosts: ${$$hosts[@key == 'zeus']}
      tasks:
      - {task: query, query: kernel, id: k}
      - {task: query, query: hosts.kernel, output: {var: again}}
      - {task: command, cmd: "echo ${$k} ${$again}"}
aspects:
  hosts:
    queries:
      kernel:
        tasks:
        - {task: command, cmd: uname -r, output: {var: release, format: text}}
        result: ${$release}
""", dry, queries=QueryCache())
        run(executor)
        assert cmds(dry) == ['uname -r', 'echo 6.1.0 6.1.0']
        assert dry.requests()[0].read_only

    def test_query_directly(self):
        """Test query() evaluates for one host."""
        dry = DryRunExecutor(results={'uname -r': CommandResult(stdout='5.14\n')})
        executor = build(self.DECLS % '{service: x}', dry)
        zeus = Host.from_node(MODEL.node('hosts.zeus'))
        assert executor.query('kernel', zeus, scope_for(executor)) == '5.14'
