"""Built-in expression functions.

Functions receive their arguments as already evaluated node sets and
return a node set. Method syntax is sugar: ``x.join(' ')`` calls
``join(x, ' ')``.

Available functions:
    map(keys, values)   mapping from key(s) to value(s)
    array(x)            one sequence holding the values of x
    join(x, sep='')     join values (sequences flattened one level) as text
    length(x)           number of children or items
    keys(x)             mapping keys
    values(x)           children of containers
    exists(x)           true if x resolved to anything
    first(x)            the first node of x
    string(x)           text rendering of x
    number(x)           numeric value of x
"""

from typing import Callable, Dict, List, NamedTuple, Optional

from opflow.exceptions import ExpressionError
from opflow.model import NodeKind, NodeRef
from .values import EMPTY, NodeSet, scalar_text, single, to_text, unwrap

FunctionImpl = Callable[..., NodeSet]


class FunctionSpec(NamedTuple):
    impl: FunctionImpl
    min_args: int
    max_args: int


FUNCTIONS: Dict[str, FunctionSpec] = {}


def function(name: str, min_args: int, max_args: Optional[int] = None):
    """Register a built-in function with its arity."""
    def decorator(impl: FunctionImpl) -> FunctionImpl:
        FUNCTIONS[name] = FunctionSpec(
            impl, min_args, min_args if max_args is None else max_args)
        return impl
    return decorator


def call_function(name: str, args: List[NodeSet]) -> NodeSet:
    """Invoke a built-in function.

    Raises:
        ExpressionError: For unknown functions or wrong arity.
    """
    spec = FUNCTIONS.get(name)
    if spec is None:
        raise ExpressionError(f"Unknown function '{name}'")
    if not spec.min_args <= len(args) <= spec.max_args:
        if spec.min_args == spec.max_args:
            expected = str(spec.min_args)
        else:
            expected = f'{spec.min_args}..{spec.max_args}'
        raise ExpressionError(
            f"{name}() takes {expected} argument(s), got {len(args)}")
    return spec.impl(*args)


def _flatten(nodes: NodeSet) -> List[NodeRef]:
    flat: List[NodeRef] = []
    for node in nodes:
        if node.kind is NodeKind.SEQUENCE:
            flat.extend(node.children())
        else:
            flat.append(node)
    return flat


@function('map', 2)
def fn_map(keys: NodeSet, vals: NodeSet) -> NodeSet:
    names = []
    for node in keys:
        if node.kind.is_container or node.value is None:
            raise ExpressionError(
                f"map() keys must be scalars, got {node.kind.value}")
        names.append(scalar_text(node.value))
    if len(names) == 1:
        return single({names[0]: unwrap(vals)})
    if len(names) != len(vals):
        raise ExpressionError(
            f"map() got {len(names)} keys but {len(vals)} values")
    return single({k: v.value for k, v in zip(names, vals)})


@function('array', 1)
def fn_array(items: NodeSet) -> NodeSet:
    return single([n.value for n in items])


@function('join', 1, 2)
def fn_join(items: NodeSet, sep: NodeSet = EMPTY) -> NodeSet:
    separator = to_text(sep)
    return single(separator.join(scalar_text(n.value) for n in _flatten(items)))


@function('length', 1)
def fn_length(items: NodeSet) -> NodeSet:
    if len(items) == 1:
        node = items[0]
        if node.kind.is_container:
            return single(len(node.value))
        return single(0 if node.value is None else 1)
    return single(len(items))


@function('keys', 1)
def fn_keys(items: NodeSet) -> NodeSet:
    return tuple(NodeRef.detached(key)
                 for node in items if node.kind is NodeKind.MAPPING
                 for key in node.value)


@function('values', 1)
def fn_values(items: NodeSet) -> NodeSet:
    return tuple(child for node in items for child in node.children())


@function('exists', 1)
def fn_exists(items: NodeSet) -> NodeSet:
    return single(bool(items))


@function('first', 1)
def fn_first(items: NodeSet) -> NodeSet:
    return items[:1]


@function('string', 1)
def fn_string(items: NodeSet) -> NodeSet:
    return single(to_text(items))


@function('number', 1)
def fn_number(items: NodeSet) -> NodeSet:
    if not items:
        return EMPTY
    if len(items) > 1:
        raise ExpressionError("number() needs a single value")
    value = items[0].value
    if isinstance(value, bool) or value is None:
        raise ExpressionError(f"Cannot convert {value!r} to a number")
    if isinstance(value, (int, float)):
        return single(value)
    try:
        text = str(value).strip()
        return single(float(text) if '.' in text else int(text))
    except (TypeError, ValueError):
        raise ExpressionError(f"Cannot convert {value!r} to a number") from None
