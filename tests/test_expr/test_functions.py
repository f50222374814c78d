"""Tests for built-in expression functions."""

import pytest

from opflow.exceptions import ExpressionError
from opflow.expr import evaluate, revision_scope, unwrap
from opflow.model import ModelTree


@pytest.fixture
def scope():
    tree = ModelTree({
        'hosts': {
            'zeus': {'hostname': 'zeus', 'packages': ['vim', 'curl'], 'port': '22'},
            'hera': {'hostname': 'hera', 'packages': []},
        },
    })
    return revision_scope(tree)


def value(expr, scope):
    return unwrap(evaluate(expr, scope))


class TestMapAndArray:
    """Tests for map() and array()."""

    def test_map_single_key(self, scope):
        """Test one key maps to all values."""
        result = value(
            "map($$hosts[@key == 'zeus'].hostname, "
            "array($$hosts[@key == 'zeus'].packages[*]))", scope)
        assert result == {'zeus': ['vim', 'curl']}

    def test_map_pairs(self, scope):
        """Test several keys pair up with several values."""
        assert value('map($$hosts.@key, $$hosts.hostname)', scope) == {
            'zeus': 'zeus', 'hera': 'hera'}

    def test_map_mismatch(self, scope):
        """Test unequal key and value counts raise."""
        with pytest.raises(ExpressionError):
            evaluate('map($$hosts.@key, $$hosts.port)', scope)

    def test_array_of_nothing(self, scope):
        """Test array() of an empty set is an empty sequence."""
        assert value('array($$hosts.nope)', scope) == []


class TestTextFunctions:
    """Tests for join() and string()."""

    def test_join_flattens_sequences(self, scope):
        """Test sequences are flattened one level before joining."""
        assert value("$$hosts.packages.join(',')", scope) == 'vim,curl'

    def test_join_default_separator(self, scope):
        """Test join without a separator."""
        assert value('join($$hosts.hostname)', scope) == 'zeushera'

    def test_string(self, scope):
        """Test string() renders values as text."""
        assert value('string(true)', scope) == 'true'
        assert value('string($$hosts.hostname)', scope) == 'zeus hera'


class TestInspection:
    """Tests for length(), keys(), values(), exists() and first()."""

    def test_length(self, scope):
        """Test length of containers and sets."""
        assert value("$$hosts[@key == 'zeus'].packages.length()", scope) == 2
        assert value("$$hosts[@key == 'hera'].packages.length()", scope) == 0
        assert value('length($$hosts)', scope) == 2
        assert value('length($$hosts.nope)', scope) == 0
        assert value("length('x')", scope) == 1

    def test_keys_and_values(self, scope):
        """Test keys and values of mappings."""
        assert value("keys($$hosts[@key == 'hera'])", scope) == ['hostname', 'packages']
        assert value("values($$hosts[@key == 'zeus'].packages)", scope) == ['vim', 'curl']

    def test_exists(self, scope):
        """Test exists() on present and missing paths."""
        assert value('exists($$hosts.port)', scope) is True
        assert value('exists($$hosts.ip)', scope) is False

    def test_first(self, scope):
        """Test first() keeps the first node."""
        assert value('first($$hosts.hostname)', scope) == 'zeus'

    def test_number(self, scope):
        """Test number() converts text."""
        assert value('number($$hosts.port) + 1', scope) == 23
        with pytest.raises(ExpressionError):
            evaluate("number('many')", scope)


class TestCallErrors:
    """Tests for call validation."""

    def test_unknown_function(self, scope):
        """Test unknown names raise."""
        with pytest.raises(ExpressionError, match='Unknown function'):
            evaluate('explode($$hosts)', scope)

    def test_arity(self, scope):
        """Test wrong argument counts raise."""
        with pytest.raises(ExpressionError, match='argument'):
            evaluate('length($$hosts, 1)', scope)
