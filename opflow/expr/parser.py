"""Parser for the path/selector expression language.

The grammar is written for lark's LALR parser. Parsed expressions are
cached, so declarations can be re-evaluated cheaply per host.

Examples of valid expressions:
    $$hosts.packages[*]
    $$hosts.**.(ip,ip4,ip6)
    $$hosts[$$model_changes.new_path ^= @.@path + '.']
    $yum_packages[$$host.hostname].join(' ')
    map($$host.hostname, array($$host.packages[@.@path == 'x']))
    $missing_packages.length() > 0
"""

import ast as _pyast
from functools import lru_cache

from lark import Lark, Transformer
from lark.exceptions import LarkError

from opflow.exceptions import ExpressionSyntaxError
from . import ast

_GRAMMAR = r"""
?start: expr

?expr: or_expr

?or_expr: and_expr
        | or_expr "or" and_expr                 -> or_op

?and_expr: not_expr
         | and_expr "and" not_expr              -> and_op

?not_expr: comparison
         | "not" not_expr                       -> not_op

?comparison: sum
           | sum COMP_OP sum                    -> compare

?sum: product
    | sum "+" product                           -> add
    | sum "-" product                           -> sub

?product: unary
        | product "*" unary                     -> mul
        | product "/" unary                     -> div
        | product "%" unary                     -> mod

?unary: postfix
      | "-" unary                               -> neg

?postfix: atom
        | postfix "." NAME                      -> child
        | postfix "." STRING                    -> quoted_child
        | postfix "." "*"                       -> children
        | postfix "." "**"                      -> descendants
        | postfix "." META                      -> meta
        | postfix "." "(" name_list ")"         -> group
        | postfix "." NAME "(" [arguments] ")"  -> method
        | postfix "[" "*" "]"                   -> children
        | postfix "[" expr "]"                  -> select

name_list: NAME ("," NAME)*
arguments: expr ("," expr)*

?atom: GLOBAL_VAR                               -> global_var
     | LOCAL_VAR                                -> local_var
     | "@"                                      -> current
     | META                                     -> current_meta
     | NAME "(" [arguments] ")"                 -> call
     | NAME                                     -> name
     | STRING                                   -> string
     | NUMBER                                   -> number
     | "true"                                   -> true
     | "false"                                  -> false
     | "null"                                   -> null
     | "[" [arguments] "]"                      -> array
     | "(" expr ")"

COMP_OP: "==" | "!=" | "<=" | ">=" | "^=" | "<" | ">"
GLOBAL_VAR: /\$\$[A-Za-z_][A-Za-z0-9_]*/
LOCAL_VAR: /\$[A-Za-z_][A-Za-z0-9_]*/
META: /@[A-Za-z_][A-Za-z0-9_]*/
NAME: /[A-Za-z_][A-Za-z0-9_]*/
STRING: /'(?:[^'\\]|\\.)*'/ | /"(?:[^"\\]|\\.)*"/
NUMBER: /\d+(\.\d+)?/

%import common.WS
%ignore WS
"""


def _unquote(token) -> str:
    return _pyast.literal_eval(str(token))


class _ToAst(Transformer):
    """Turn lark parse trees into opflow.expr.ast nodes."""

    def or_op(self, c):
        return ast.Or(c[0], c[1])

    def and_op(self, c):
        return ast.And(c[0], c[1])

    def not_op(self, c):
        return ast.Not(c[0])

    def compare(self, c):
        return ast.Compare(str(c[1]), c[0], c[2])

    def add(self, c):
        return ast.Binary('+', c[0], c[1])

    def sub(self, c):
        return ast.Binary('-', c[0], c[1])

    def mul(self, c):
        return ast.Binary('*', c[0], c[1])

    def div(self, c):
        return ast.Binary('/', c[0], c[1])

    def mod(self, c):
        return ast.Binary('%', c[0], c[1])

    def neg(self, c):
        return ast.Unary('-', c[0])

    def child(self, c):
        return ast.Child(c[0], str(c[1]))

    def quoted_child(self, c):
        return ast.Child(c[0], _unquote(c[1]))

    def children(self, c):
        return ast.Children(c[0])

    def descendants(self, c):
        return ast.Descendants(c[0])

    def meta(self, c):
        return ast.Meta(c[0], str(c[1])[1:])

    def group(self, c):
        return ast.Group(c[0], tuple(c[1]))

    def method(self, c):
        return ast.Method(c[0], str(c[1]), tuple(c[2] or ()))

    def select(self, c):
        return ast.Select(c[0], c[1])

    def name_list(self, c):
        return [str(t) for t in c]

    def arguments(self, c):
        return list(c)

    def global_var(self, c):
        return ast.GlobalVar(str(c[0])[2:])

    def local_var(self, c):
        return ast.LocalVar(str(c[0])[1:])

    def current(self, c):
        return ast.Current()

    def current_meta(self, c):
        return ast.Meta(None, str(c[0])[1:])

    def call(self, c):
        return ast.Call(str(c[0]), tuple(c[1] or ()))

    def name(self, c):
        return ast.Name(str(c[0]))

    def string(self, c):
        return ast.Literal(_unquote(c[0]))

    def number(self, c):
        text = str(c[0])
        return ast.Literal(float(text) if '.' in text else int(text))

    def true(self, c):
        return ast.Literal(True)

    def false(self, c):
        return ast.Literal(False)

    def null(self, c):
        return ast.Literal(None)

    def array(self, c):
        return ast.ArrayLiteral(tuple(c[0] or ()))


_parser = Lark(_GRAMMAR, parser='lalr', maybe_placeholders=True)


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> ast.Expr:
    """Parse expression text (without the ``${ }`` delimiters).

    Raises:
        ExpressionSyntaxError: If the text is not a valid expression.
    """
    if not text or not text.strip():
        raise ExpressionSyntaxError(text, "empty expression")
    try:
        tree = _parser.parse(text)
        return _ToAst().transform(tree)
    except LarkError as e:
        raise ExpressionSyntaxError(text, str(e).strip().splitlines()[0]) from e
