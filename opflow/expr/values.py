"""Expression values and coercions.

Every expression evaluates to a *node set*: an ordered tuple of NodeRefs.
Nodes that live in a model tree keep their path; computed values are
wrapped in detached NodeRefs. The helpers below are the only places where
node sets are turned back into plain Python values, so the coercion rules
live in one module:

- ``unwrap``: empty -> None, one node -> its value, several -> list.
- ``is_truthy``: empty, null and ``false`` are false; anything else is true.
- ``as_condition``: strict; only booleans, null and the empty set are
  accepted, everything else raises ExpressionError.
- ``to_scalar`` / ``to_text``: required single values for leaf tasks.
"""

import json
from typing import Any, Iterable, List, Optional, Tuple

from opflow.exceptions import ExpressionError
from opflow.model import ModelTree, NodeKind, NodeRef, kind_of

NodeSet = Tuple[NodeRef, ...]

EMPTY: NodeSet = ()


def single(value: Any) -> NodeSet:
    """Wrap one plain value as a detached node set."""
    return (NodeRef.detached(value),)


def as_nodeset(value: Any) -> NodeSet:
    """Normalize a binding value into a node set.

    NodeRefs and tuples of NodeRefs pass through; trees contribute their
    root; any other value becomes one detached node. Plain lists are data
    (one sequence node), not node sets.
    """
    if isinstance(value, NodeRef):
        return (value,)
    if isinstance(value, ModelTree):
        return (value.root,)
    if isinstance(value, tuple) and all(isinstance(v, NodeRef) for v in value):
        return value
    if (isinstance(value, list) and value
            and all(isinstance(v, NodeRef) for v in value)):
        return tuple(value)
    if isinstance(value, tuple):
        value = list(value)
    return single(value)


def values(nodes: Iterable[NodeRef]) -> List[Any]:
    return [n.value for n in nodes]


def unwrap(nodes: NodeSet) -> Any:
    """Return the plain value(s) of a node set."""
    if not nodes:
        return None
    if len(nodes) == 1:
        return nodes[0].value
    return [n.value for n in nodes]


def is_truthy(nodes: NodeSet) -> bool:
    if not nodes:
        return False
    if len(nodes) == 1:
        value = nodes[0].value
        if value is None:
            return False
        if isinstance(value, bool):
            return value
    return True


def as_condition(nodes: NodeSet, what: str = 'condition') -> bool:
    """Coerce a node set used as a condition.

    Raises:
        ExpressionError: If the value is not a boolean, null or empty.
    """
    if not nodes:
        return False
    if len(nodes) == 1:
        value = nodes[0].value
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        raise ExpressionError(
            f"{what} must be boolean, got {kind_of(value).value} {value!r}")
    raise ExpressionError(f"{what} must be boolean, got {len(nodes)} values")


def single_value(nodes: NodeSet, what: str) -> Any:
    """Return the value of a node set holding exactly one node.

    Raises:
        ExpressionError: If the set is empty or holds several nodes.
    """
    if not nodes:
        raise ExpressionError(f"{what} is required but resolved to nothing")
    if len(nodes) > 1:
        raise ExpressionError(
            f"{what} must be a single value, got {len(nodes)} values")
    return nodes[0].value


def to_scalar(nodes: NodeSet, what: str) -> Any:
    """Return a required scalar (string, number or boolean)."""
    value = single_value(nodes, what)
    if kind_of(value).is_container or value is None:
        raise ExpressionError(
            f"{what} must be a scalar, got {kind_of(value).value}")
    return value


def scalar_text(value: Any) -> str:
    """Render one plain value as text."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def to_text(nodes: NodeSet) -> str:
    """Render a node set as text; several nodes are joined with spaces."""
    return ' '.join(scalar_text(n.value) for n in nodes)


def to_optional_text(nodes: NodeSet, what: str) -> Optional[str]:
    """Like ``to_scalar`` but absent values give None."""
    if not nodes or (len(nodes) == 1 and nodes[0].value is None):
        return None
    return scalar_text(to_scalar(nodes, what))


def is_number(value: Any) -> bool:
    return kind_of(value) is NodeKind.NUMBER


def same_value(a: Any, b: Any) -> bool:
    """Equality that keeps booleans and numbers apart."""
    ka, kb = kind_of(a), kind_of(b)
    if ka is not kb:
        return False
    if ka is NodeKind.SEQUENCE:
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if ka is NodeKind.MAPPING:
        return (set(a) == set(b)
                and all(same_value(a[k], b[k]) for k in a))
    return a == b
