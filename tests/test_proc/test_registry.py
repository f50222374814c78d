"""Tests for ProcRegistry."""

import pytest

from opflow.exceptions import UnknownProcError
from opflow.expr import evaluate, revision_scope, single
from opflow.model import ModelTree
from opflow.proc import (
    Aspect, CommandTask, FnDecl, PollDecl, Proc, ProcKind, ProcRegistry,
    QueryDecl, RunBlock, TaskKind, TryTask, CatchSpec, walk_tasks,
)
from opflow.matching import WatchSpec


@pytest.fixture
def registry():
    registry = ProcRegistry()
    registry.register(Proc('yum_update_add', ProcKind.UPDATE,
                           watches=(WatchSpec.parse('$$hosts.packages[*]', '+'),)))
    registry.register(Proc('yum_install', ProcKind.EXEC))
    registry.register(Proc('disk_check', ProcKind.CHECK))
    return registry


class TestProcRegistry:
    """Tests for registering and finding procs."""

    def test_declaration_order(self, registry):
        """Test procs keep declaration order and filter by kind."""
        assert [p.name for p in registry.procs()] == [
            'yum_update_add', 'yum_install', 'disk_check']
        assert [p.name for p in registry.procs(ProcKind.EXEC)] == ['yum_install']
        assert len(registry) == 3
        assert 'yum_install' in registry

    def test_duplicate(self, registry):
        """Test duplicate names are rejected."""
        with pytest.raises(ValueError):
            registry.register(Proc('yum_install', ProcKind.EXEC))

    def test_unknown(self, registry):
        """Test unknown names raise UnknownProcError."""
        with pytest.raises(UnknownProcError):
            registry.get('apt_install')

    def test_only_update_procs_trigger(self, registry):
        """Test is_triggerable per kind."""
        assert registry.get('yum_update_add').is_triggerable
        assert not registry.get('yum_install').is_triggerable


class TestProcReferences:
    """Tests for $$procs and resolve()."""

    def test_procs_global(self, registry):
        """Test $$procs exposes declaration records."""
        scope = revision_scope(ModelTree({}), procs=registry.nodes())
        nodes = evaluate("$$procs[@key == 'yum_install']", scope)
        assert nodes[0].value['proc'] == 'exec'
        assert registry.resolve(nodes).name == 'yum_install'

    def test_watch_record(self, registry):
        """Test the record lists watch operators."""
        record = registry.get('yum_update_add').to_record()
        assert record['watch'] == {'$$hosts.packages[*]': '+'}

    def test_resolve_by_name_or_mapping(self, registry):
        """Test plain names and mappings with a name entry."""
        assert registry.resolve(single('disk_check')).name == 'disk_check'
        assert registry.resolve(single({'name': 'yum_install'})).name == 'yum_install'

    def test_resolve_errors(self, registry):
        """Test empty, ambiguous and invalid references."""
        with pytest.raises(UnknownProcError):
            registry.resolve(())
        with pytest.raises(UnknownProcError, match='ambiguous'):
            registry.resolve(registry.nodes())
        with pytest.raises(UnknownProcError):
            registry.resolve(single(42))

    def test_tree_refreshes_after_register(self, registry):
        """Test registering invalidates the cached $$procs tree."""
        before = registry.tree
        registry.register(Proc('late', ProcKind.EXEC))
        assert registry.tree is not before
        assert registry.tree.contains('late')


class TestAspectMembers:
    """Tests for fn, query, check and poll lookup."""

    @pytest.fixture
    def aspects(self, registry):
        hosts = Aspect(
            'hosts',
            fns={'restart': FnDecl('restart', ('service',))},
            queries={'kernel': QueryDecl('kernel')},
            checks={'uptime': Proc('hosts.uptime', ProcKind.CHECK)},
            polls={'ping': PollDecl('ping')},
        )
        disks = Aspect('disks', fns={'restart': FnDecl('restart')})
        registry.register_aspect(hosts)
        registry.register_aspect(disks)
        return registry

    def test_qualified_lookup(self, aspects):
        """Test aspect.member names."""
        aspect, fn = aspects.fn('hosts.restart')
        assert aspect.name == 'hosts'
        assert fn.params == ('service',)

    def test_bare_lookup_must_be_unique(self, aspects):
        """Test bare names resolve only when unambiguous."""
        assert aspects.query('kernel')[1].name == 'kernel'
        with pytest.raises(UnknownProcError, match='Ambiguous'):
            aspects.fn('restart')

    def test_unknown_member(self, aspects):
        """Test unknown members raise."""
        with pytest.raises(UnknownProcError):
            aspects.query('hosts.nope')
        with pytest.raises(UnknownProcError):
            aspects.fn('nope')

    def test_checks_and_polls(self, aspects):
        """Test checks include aspect checks after check procs."""
        assert [p.name for p in aspects.checks()] == ['disk_check', 'hosts.uptime']
        assert [(a.name, p.name) for a, p in aspects.polls()] == [('hosts', 'ping')]

    def test_duplicate_aspect(self, aspects):
        """Test duplicate aspects are rejected."""
        with pytest.raises(ValueError):
            aspects.register_aspect(Aspect('hosts'))


class TestTaskTree:
    """Tests for task tree helpers."""

    def test_walk_tasks(self):
        """Test pre-order walk through composite tasks."""
        inner = CommandTask(TaskKind.COMMAND, id='inner')
        handler = CommandTask(TaskKind.COMMAND, id='handler')
        tree = (TryTask(TaskKind.TRY, id='try', tasks=(inner,),
                        catch=CatchSpec(tasks=(handler,))),)
        assert [t.id for t in walk_tasks(tree)] == ['try', 'inner', 'handler']

    def test_proc_tasks(self):
        """Test Proc.tasks covers every run block."""
        proc = Proc('p', ProcKind.UPDATE, run=(
            RunBlock(tasks=(CommandTask(TaskKind.COMMAND, id='a'),)),
            RunBlock(tasks=(CommandTask(TaskKind.COMMAND, id='b'),)),
        ))
        assert [t.id for t in proc.tasks()] == ['a', 'b']

    def test_task_name(self):
        """Test label wins over id and kind."""
        assert CommandTask(TaskKind.COMMAND).name == 'command'
        assert CommandTask(TaskKind.COMMAND, id='x').name == 'x'
        assert CommandTask(TaskKind.COMMAND, id='x', label='Run x').name == 'Run x'
