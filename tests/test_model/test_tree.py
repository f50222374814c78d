"""Tests for ModelTree, NodeRef and ModelEditor."""

import pytest

from opflow.exceptions import MalformedModel
from opflow.model import (
    ModelPath, ModelTree, NodeKind, NodeRef, kind_of, load_model,
)

MODEL = {
    'hosts': {
        'zeus': {'hostname': 'zeus', 'ip': '10.0.0.1', 'packages': ['vim', 'git']},
        'hera': {'hostname': 'hera', 'ip': '10.0.0.2', 'packages': []},
    },
}


class TestModelTreeValidation:
    """Tests for tree validation on construction."""

    def test_cycle_rejected(self):
        """Test a container that contains itself is rejected."""
        data = {'a': []}
        data['a'].append(data)
        with pytest.raises(MalformedModel):
            ModelTree(data)

    def test_shared_subtree_allowed(self):
        """Test a subtree referenced twice (YAML anchor) is accepted."""
        shared = {'x': 1}
        tree = ModelTree({'a': shared, 'b': shared})
        assert tree.get('b.x') == 1

    def test_unaddressable_type(self):
        """Test non-document values are rejected with the path."""
        with pytest.raises(MalformedModel, match='hosts'):
            ModelTree({'hosts': {'zeus': object()}})

    def test_non_string_key(self):
        """Test non-string mapping keys are rejected."""
        with pytest.raises(MalformedModel):
            ModelTree({1: 'one'})

    def test_kind_of(self):
        """Test kinds keep booleans and numbers apart."""
        assert kind_of(True) is NodeKind.BOOL
        assert kind_of(1) is NodeKind.NUMBER
        assert kind_of([]) is NodeKind.SEQUENCE
        assert kind_of(None) is NodeKind.NULL


class TestModelTreeAccess:
    """Tests for addressing nodes."""

    def test_get_by_text_path(self):
        """Test plain value lookup."""
        tree = ModelTree(MODEL)
        assert tree.get('hosts.zeus.packages[1]') == 'git'
        assert tree.get('hosts.apollo', 'missing') == 'missing'

    def test_node_ref(self):
        """Test NodeRef keeps tree and path."""
        tree = ModelTree(MODEL)
        node = tree.node('hosts.zeus')
        assert node.key == 'zeus'
        assert node.index is None
        assert node.is_attached
        assert node.kind is NodeKind.MAPPING

    def test_children_in_document_order(self):
        """Test children are yielded in document order."""
        tree = ModelTree(MODEL)
        keys = [c.key for c in tree.node('hosts').children()]
        assert keys == ['zeus', 'hera']

    def test_negative_index_child(self):
        """Test negative index children get a normalized path."""
        node = ModelTree(MODEL).node('hosts.zeus.packages').child(-1)
        assert node.value == 'git'
        assert str(node.path) == 'hosts.zeus.packages[1]'

    def test_detached(self):
        """Test detached refs carry no tree."""
        node = NodeRef.detached({'a': 1})
        assert not node.is_attached
        assert node.child('a').value == 1

    def test_tree_is_copied(self):
        """Test the tree does not alias the input document."""
        data = {'a': [1]}
        tree = ModelTree(data)
        data['a'].append(2)
        assert tree.get('a') == [1]

    def test_from_yaml(self):
        """Test building from YAML text."""
        tree = ModelTree.from_yaml("hosts:\n  zeus: {ip: 10.0.0.1}\n")
        assert tree.get('hosts.zeus.ip') == '10.0.0.1'

    def test_from_invalid_yaml(self):
        """Test invalid YAML raises MalformedModel."""
        with pytest.raises(MalformedModel):
            ModelTree.from_yaml("a: [1, 2")

    def test_load_model(self, tmp_path):
        """Test loading a model file."""
        path = tmp_path / 'model.yaml'
        path.write_text("hosts:\n  zeus: {}\n")
        assert load_model(path).contains('hosts.zeus')

    def test_load_model_missing(self, tmp_path):
        """Test a missing model file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_model(tmp_path / 'nope.yaml')


class TestModelEditor:
    """Tests for editing working copies."""

    def test_edit_does_not_touch_original(self):
        """Test edits produce a new tree."""
        tree = ModelTree(MODEL)
        new = tree.edit().append('hosts.zeus.packages', 'curl').to_tree()
        assert tree.get('hosts.zeus.packages') == ['vim', 'git']
        assert new.get('hosts.zeus.packages') == ['vim', 'git', 'curl']

    def test_set_creates_key(self):
        """Test set on a missing key creates it."""
        new = ModelTree(MODEL).edit().set('hosts.zeus.ip6', '::1').to_tree()
        assert new.get('hosts.zeus.ip6') == '::1'

    def test_set_index_at_length_appends(self):
        """Test set at index == length appends."""
        new = ModelTree(MODEL).edit().set('hosts.hera.packages[0]', 'vim').to_tree()
        assert new.get('hosts.hera.packages') == ['vim']

    def test_remove(self):
        """Test remove deletes the node."""
        new = ModelTree(MODEL).edit().remove('hosts.hera').to_tree()
        assert not new.contains('hosts.hera')

    def test_remove_missing(self):
        """Test removing a missing node raises KeyError."""
        with pytest.raises(KeyError):
            ModelTree(MODEL).edit().remove('hosts.apollo')

    def test_commit(self):
        """Test commit produces a revision."""
        revision = ModelTree(MODEL).edit().set('version', 2).commit('r1')
        assert revision.id == 'r1'
        assert revision.tree.get('version') == 2

    def test_root_path(self):
        """Test ModelPath() addresses the root."""
        tree = ModelTree(MODEL)
        assert tree.node(ModelPath()).value == MODEL
