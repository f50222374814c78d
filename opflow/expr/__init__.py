"""Path/selector expression language.

Example:
    from opflow.expr import Scope, evaluate

    scope = Scope.root({'model': tree, 'hosts': tuple(tree.node('hosts').children())})
    evaluate("$$hosts[@key == 'zeus'].packages[*]", scope)
"""

from .parser import parse_expression
from .scope import Scope, host_nodes, revision_scope
from .evaluator import Evaluator, evaluate
from .functions import FUNCTIONS, call_function
from .template import (
    Value, StaticValue, ExprValue, InterpolatedValue, compile_value,
    compile_scope, resolve_scope, render_template, split_template,
)
from .values import (
    EMPTY, NodeSet, as_condition, as_nodeset, is_truthy, single,
    single_value, to_optional_text, to_scalar, to_text, unwrap,
)

__all__ = [
    # Parsing and evaluation
    'parse_expression',
    'evaluate',
    'Evaluator',
    'Scope',
    'host_nodes',
    'revision_scope',
    'FUNCTIONS',
    'call_function',
    # Declaration values
    'Value',
    'StaticValue',
    'ExprValue',
    'InterpolatedValue',
    'compile_value',
    'compile_scope',
    'resolve_scope',
    'render_template',
    'split_template',
    # Node sets
    'EMPTY',
    'NodeSet',
    'as_condition',
    'as_nodeset',
    'is_truthy',
    'single',
    'single_value',
    'to_optional_text',
    'to_scalar',
    'to_text',
    'unwrap',
]
