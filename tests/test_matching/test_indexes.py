"""Tests for PathIndex and GlobIndex."""

import pytest

from opflow.matching import GlobIndex, PathIndex, compile_glob
from opflow.model import ChangeKind, ModelPath


def p(text):
    return ModelPath.parse(text)


class TestPathIndex:
    """Tests for PathIndex."""

    @pytest.fixture
    def index(self):
        index = PathIndex()
        index.register(p('hosts.zeus.packages[0]'), 'pkg')
        index.register(p('hosts.zeus.ip'), 'ip')
        return index

    def test_modified_is_exact(self, index):
        """Test modified changes only hit the exact path."""
        assert index.find(p('hosts.zeus.ip'), ChangeKind.MODIFIED) == ['ip']
        assert index.find(p('hosts.zeus'), ChangeKind.MODIFIED) == []

    def test_added_subtree(self, index):
        """Test an added subtree hits registered paths inside it."""
        assert index.find(p('hosts.zeus'), ChangeKind.ADDED) == ['pkg', 'ip']

    def test_removed_leaf(self, index):
        """Test a removed leaf hits its own path."""
        assert index.find(p('hosts.zeus.packages[0]'), ChangeKind.REMOVED) == ['pkg']

    def test_unrelated_change(self, index):
        """Test sibling paths do not match."""
        assert index.find(p('hosts.zeus.packages[1]'), ChangeKind.ADDED) == []
        assert len(index) == 2


class TestCompileGlob:
    """Tests for compile_glob."""

    @pytest.mark.parametrize('pattern,path,expected', [
        ('conf/*.yaml', 'conf/a.yaml', True),
        ('conf/*.yaml', 'conf/sub/a.yaml', False),
        ('conf/**/*.yaml', 'conf/a.yaml', True),
        ('conf/**/*.yaml', 'conf/x/y/a.yaml', True),
        ('conf/**', 'conf/x/y', True),
        ('hosts/?eus', 'hosts/zeus', True),
        ('hosts/[zh]*', 'hosts/hera', True),
        ('hosts/[!z]*', 'hosts/zeus', False),
        ('a.b', 'axb', False),
    ])
    def test_patterns(self, pattern, path, expected):
        """Test glob syntax."""
        assert bool(compile_glob(pattern).match(path)) is expected


class TestGlobIndex:
    """Tests for GlobIndex."""

    def test_find_all(self):
        """Test every matching glob is returned in registration order."""
        index = GlobIndex()
        index.register('hosts/*', 'hosts')
        index.register('**/*.tmpl', 'templates')
        index.register('hosts/zeus', 'zeus')
        assert index.find_all('hosts/zeus') == ['hosts', 'zeus']
        assert index.find_all('files/motd.tmpl') == ['templates']
        assert index.find_all('README') == []
        assert len(index) == 3

    def test_normalized_paths(self):
        """Test leading ./ and / are ignored."""
        index = GlobIndex()
        index.register('./conf/*', 'conf')
        assert index.find_all('/conf/a') == ['conf']
        assert index.find_all('./conf/a') == ['conf']
