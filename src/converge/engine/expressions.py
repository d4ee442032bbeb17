"""
Converge Expression Language

A small, side-effect free expression language for conditions and argument
interpolation. Source text is parsed with Jinja2's parser; the resulting node
tree is converted into the tagged AST below and evaluated here, so nothing
but the allow-listed filters and tests is ever callable.

Scopes are any object with ``lookup(name) -> (value, ok)``; plain mappings are
accepted and wrapped.
"""

import json
import logging
import operator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from jinja2 import Environment, TemplateSyntaxError, nodes

from converge.engine.errors import ExpressionError, UndefinedVariable


logger = logging.getLogger(__name__)


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Attr:
    obj: 'Node'
    name: str


@dataclass(frozen=True)
class Index:
    obj: 'Node'
    key: 'Node'


@dataclass(frozen=True)
class Compare:
    """Chained comparison: ``left op1 x op2 y``."""
    left: 'Node'
    ops: Tuple[Tuple[str, 'Node'], ...]


@dataclass(frozen=True)
class Membership:
    item: 'Node'
    container: 'Node'
    negated: bool = False


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    left: 'Node'
    right: 'Node'


@dataclass(frozen=True)
class Not:
    operand: 'Node'


@dataclass(frozen=True)
class Unary:
    op: str  # "-" | "+"
    operand: 'Node'


@dataclass(frozen=True)
class Arith:
    op: str
    left: 'Node'
    right: 'Node'


@dataclass(frozen=True)
class Test:
    operand: 'Node'
    name: str
    args: Tuple['Node', ...] = ()


@dataclass(frozen=True)
class Filter:
    operand: 'Node'
    name: str
    args: Tuple['Node', ...] = ()
    kwargs: Tuple[Tuple[str, 'Node'], ...] = ()


@dataclass(frozen=True)
class ListExpr:
    items: Tuple['Node', ...]


@dataclass(frozen=True)
class DictExpr:
    pairs: Tuple[Tuple['Node', 'Node'], ...]


@dataclass(frozen=True)
class CondExpr:
    test: 'Node'
    then: 'Node'
    otherwise: Optional['Node'] = None


@dataclass(frozen=True)
class Template:
    """Mixed text and expressions; always evaluates to a string."""
    parts: Tuple[Union[str, 'Node'], ...]


Node = Union[
    Literal, Var, Attr, Index, Compare, Membership, BoolOp, Not, Unary,
    Arith, Test, Filter, ListExpr, DictExpr, CondExpr, Template,
]


# =============================================================================
# Truthiness
# =============================================================================

def truthy(value: Any) -> bool:
    """
    Fixed truthiness table.

    None, False, 0, 0.0 and "" are false. Everything else is true, including
    empty collections.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


# =============================================================================
# Filters and tests
# =============================================================================

def _filter_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1', 'on')
    return truthy(value)


def _filter_join(value: Any, sep: str = '') -> str:
    return str(sep).join(str(i) for i in value)


def _filter_dict2items(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, Mapping):
        raise ExpressionError(f"dict2items expects a mapping, got {type(value).__name__}")
    return [{"key": k, "value": v} for k, v in value.items()]


def _filter_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


# ``default`` / ``d`` are handled by the evaluator: they must see undefined.
FILTERS: Dict[str, Callable[..., Any]] = {
    'lower': lambda x: str(x).lower(),
    'upper': lambda x: str(x).upper(),
    'replace': lambda s, old, new: str(s).replace(old, new),
    'to_json': lambda x: json.dumps(x),
    'bool': _filter_bool,
    'int': _filter_int,
    'string': lambda x: str(x),
    'trim': lambda x: str(x).strip(),
    'length': lambda x: len(x),
    'count': lambda x: len(x),
    'join': _filter_join,
    'first': lambda x: x[0] if x else None,
    'last': lambda x: x[-1] if x else None,
    'dict2items': _filter_dict2items,
}

DEFAULT_FILTERS = ('default', 'd')


def _result_flag(value: Any, key: str) -> bool:
    if not isinstance(value, Mapping):
        raise ExpressionError(f"The '{key}' test expects a registered result")
    return truthy(value.get(key, False))


# ``defined`` / ``undefined`` are handled by the evaluator.
TESTS: Dict[str, Callable[..., bool]] = {
    'none': lambda x: x is None,
    'string': lambda x: isinstance(x, str),
    'number': lambda x: isinstance(x, (int, float)) and not isinstance(x, bool),
    'boolean': lambda x: isinstance(x, bool),
    'mapping': lambda x: isinstance(x, Mapping),
    'sequence': lambda x: isinstance(x, (list, tuple, str)),
    'iterable': lambda x: hasattr(x, '__iter__') and not isinstance(x, str),
    'failed': lambda x: _result_flag(x, 'failed'),
    'changed': lambda x: _result_flag(x, 'changed'),
    'skipped': lambda x: _result_flag(x, 'skipped'),
    'succeeded': lambda x: not _result_flag(x, 'failed'),
    'success': lambda x: not _result_flag(x, 'failed'),
    'equalto': lambda x, other: x == other,
    'eq': lambda x, other: x == other,
}

DEFINED_TESTS = ('defined', 'undefined')


_COMPARISONS: Dict[str, Callable[[Any, Any], Any]] = {
    'eq': operator.eq,
    'ne': operator.ne,
    'lt': operator.lt,
    'lteq': operator.le,
    'gt': operator.gt,
    'gteq': operator.ge,
    'in': lambda a, b: a in b,
    'notin': lambda a, b: a not in b,
}

_ARITHMETIC: Dict[str, Callable[[Any, Any], Any]] = {
    '+': operator.add,
    '-': operator.sub,
    '*': operator.mul,
    '/': operator.truediv,
    '//': operator.floordiv,
    '%': operator.mod,
    '**': operator.pow,
    '~': lambda a, b: _to_text(a) + _to_text(b),
}

_JINJA_ARITH = {
    nodes.Add: '+',
    nodes.Sub: '-',
    nodes.Mul: '*',
    nodes.Div: '/',
    nodes.FloorDiv: '//',
    nodes.Mod: '%',
    nodes.Pow: '**',
}


# =============================================================================
# Parsing
# =============================================================================

_env = Environment(autoescape=False, keep_trailing_newline=True)


def _parse(source: str) -> nodes.Template:
    try:
        return _env.parse(source)
    except TemplateSyntaxError as e:
        raise ExpressionError(f"Syntax error: {e.message}", expression=source)


class _Converter:
    """Turns a Jinja2 node tree into the expression AST."""

    def __init__(self, source: str):
        self.source = source

    def reject(self, node: nodes.Node) -> ExpressionError:
        return ExpressionError(
            f"Unsupported syntax: {type(node).__name__}",
            expression=self.source,
        )

    def convert(self, node: nodes.Node) -> Node:
        if isinstance(node, nodes.Const):
            return Literal(node.value)
        if isinstance(node, nodes.Name):
            if node.ctx != 'load':
                raise self.reject(node)
            return Var(node.name)
        if isinstance(node, nodes.Getattr):
            return Attr(self.convert(node.node), node.attr)
        if isinstance(node, nodes.Getitem):
            if isinstance(node.arg, nodes.Slice):
                raise self.reject(node.arg)
            return Index(self.convert(node.node), self.convert(node.arg))
        if isinstance(node, nodes.Compare):
            return self._compare(node)
        if isinstance(node, nodes.And):
            return BoolOp('and', self.convert(node.left), self.convert(node.right))
        if isinstance(node, nodes.Or):
            return BoolOp('or', self.convert(node.left), self.convert(node.right))
        if isinstance(node, nodes.Not):
            return Not(self.convert(node.node))
        if isinstance(node, nodes.Neg):
            return Unary('-', self.convert(node.node))
        if isinstance(node, nodes.Pos):
            return Unary('+', self.convert(node.node))
        if type(node) in _JINJA_ARITH:
            return Arith(_JINJA_ARITH[type(node)], self.convert(node.left), self.convert(node.right))
        if isinstance(node, nodes.Concat):
            result = self.convert(node.nodes[0])
            for part in node.nodes[1:]:
                result = Arith('~', result, self.convert(part))
            return result
        if isinstance(node, nodes.Test):
            self._check_call(node)
            return Test(
                self.convert(node.node),
                node.name,
                tuple(self.convert(a) for a in node.args),
            )
        if isinstance(node, nodes.Filter):
            if node.node is None:
                raise self.reject(node)
            self._check_call(node)
            return Filter(
                self.convert(node.node),
                node.name,
                tuple(self.convert(a) for a in node.args),
                tuple((kw.key, self.convert(kw.value)) for kw in node.kwargs),
            )
        if isinstance(node, (nodes.List, nodes.Tuple)):
            return ListExpr(tuple(self.convert(i) for i in node.items))
        if isinstance(node, nodes.Dict):
            return DictExpr(tuple(
                (self.convert(pair.key), self.convert(pair.value)) for pair in node.items
            ))
        if isinstance(node, nodes.CondExpr):
            otherwise = self.convert(node.expr2) if node.expr2 is not None else None
            return CondExpr(self.convert(node.test), self.convert(node.expr1), otherwise)
        raise self.reject(node)

    def _compare(self, node: nodes.Compare) -> Node:
        left = self.convert(node.expr)
        if len(node.ops) == 1 and node.ops[0].op in ('in', 'notin'):
            operand = node.ops[0]
            return Membership(left, self.convert(operand.expr), negated=operand.op == 'notin')
        ops = []
        for operand in node.ops:
            if operand.op not in _COMPARISONS:
                raise self.reject(node)
            ops.append((operand.op, self.convert(operand.expr)))
        return Compare(left, tuple(ops))

    def _check_call(self, node: Union[nodes.Test, nodes.Filter]) -> None:
        if node.dyn_args is not None or node.dyn_kwargs is not None:
            raise self.reject(node)

    def template(self, tree: nodes.Template) -> Node:
        parts: List[Union[str, Node]] = []
        for stmt in tree.body:
            if not isinstance(stmt, nodes.Output):
                raise ExpressionError(
                    f"Statements are not supported: {type(stmt).__name__}",
                    expression=self.source,
                )
            for child in stmt.nodes:
                if isinstance(child, nodes.TemplateData):
                    parts.append(child.data)
                else:
                    parts.append(self.convert(child))
        if len(parts) == 1 and not isinstance(parts[0], str):
            return parts[0]
        return Template(tuple(parts))


@lru_cache(maxsize=2048)
def compile_expression(source: str) -> Node:
    """Parse a bare expression (``when`` style, no braces)."""
    text = source.strip()
    if not text:
        raise ExpressionError("Empty expression", expression=source)
    tree = _parse("{{ " + text + " }}")
    converter = _Converter(source)
    node = converter.template(tree)
    if isinstance(node, Template):
        raise ExpressionError("Expected a single expression", expression=source)
    return node


@lru_cache(maxsize=2048)
def compile_template(text: str) -> Node:
    """
    Parse interpolated text.

    A string that is exactly one ``{{ expr }}`` compiles to that expression,
    so evaluation yields its native value. Anything else compiles to a
    Template that renders to a string.
    """
    return _Converter(text).template(_parse(text))


def is_template(value: Any) -> bool:
    return isinstance(value, str) and ('{{' in value or '{%' in value)


# =============================================================================
# Evaluation
# =============================================================================

class _MappingScope:
    """Adapter giving a plain mapping the scope protocol."""

    def __init__(self, data: Mapping[str, Any]):
        self.data = data

    def lookup(self, name: str) -> Tuple[Any, bool]:
        if name in self.data:
            return self.data[name], True
        return None, False


def as_scope(scope: Any) -> Any:
    if hasattr(scope, 'lookup'):
        return scope
    if isinstance(scope, Mapping):
        return _MappingScope(scope)
    raise TypeError(f"Not a variable scope: {type(scope).__name__}")


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def _describe(node: Node) -> str:
    """Dotted name of a reference node, for undefined-variable messages."""
    if isinstance(node, Var):
        return node.name
    if isinstance(node, Attr):
        return f"{_describe(node.obj)}.{node.name}"
    if isinstance(node, Index):
        key = node.key.value if isinstance(node.key, Literal) else "..."
        return f"{_describe(node.obj)}[{key!r}]"
    return type(node).__name__


class Evaluator:
    """Evaluates AST nodes against one scope."""

    def __init__(self, scope: Any, source: Optional[str] = None):
        self.scope = as_scope(scope)
        self.source = source

    def visit(self, node: Node) -> Any:
        method = getattr(self, 'visit_' + type(node).__name__, None)
        if method is None:
            raise ExpressionError(f"Cannot evaluate {type(node).__name__}", self.source)
        return method(node)

    def error(self, message: str) -> ExpressionError:
        return ExpressionError(message, expression=self.source)

    def visit_Literal(self, node: Literal) -> Any:
        return node.value

    def visit_Var(self, node: Var) -> Any:
        value, ok = self.scope.lookup(node.name)
        if not ok:
            raise UndefinedVariable(node.name, self.source)
        return value

    def visit_Attr(self, node: Attr) -> Any:
        obj = self.visit(node.obj)
        if isinstance(obj, Mapping):
            if node.name in obj:
                return obj[node.name]
        elif not node.name.startswith('_') and hasattr(obj, node.name):
            value = getattr(obj, node.name)
            if not callable(value):
                return value
        raise UndefinedVariable(_describe(node), self.source)

    def visit_Index(self, node: Index) -> Any:
        obj = self.visit(node.obj)
        key = self.visit(node.key)
        try:
            return obj[key]
        except (KeyError, IndexError):
            raise UndefinedVariable(_describe(node), self.source)
        except TypeError as e:
            raise self.error(f"Cannot index {type(obj).__name__}: {e}")

    def visit_Compare(self, node: Compare) -> bool:
        left = self.visit(node.left)
        for op, right_node in node.ops:
            right = self.visit(right_node)
            try:
                if not _COMPARISONS[op](left, right):
                    return False
            except TypeError as e:
                raise self.error(f"Cannot compare: {e}")
            left = right
        return True

    def visit_Membership(self, node: Membership) -> bool:
        item = self.visit(node.item)
        container = self.visit(node.container)
        try:
            found = item in container
        except TypeError as e:
            raise self.error(f"Invalid membership test: {e}")
        return not found if node.negated else found

    def visit_BoolOp(self, node: BoolOp) -> Any:
        left = self.visit(node.left)
        if node.op == 'and':
            return self.visit(node.right) if truthy(left) else left
        return left if truthy(left) else self.visit(node.right)

    def visit_Not(self, node: Not) -> bool:
        return not truthy(self.visit(node.operand))

    def visit_Unary(self, node: Unary) -> Any:
        value = self.visit(node.operand)
        try:
            return -value if node.op == '-' else +value
        except TypeError as e:
            raise self.error(f"Invalid operand: {e}")

    def visit_Arith(self, node: Arith) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return _ARITHMETIC[node.op](left, right)
        except (TypeError, ZeroDivisionError) as e:
            raise self.error(f"Invalid arithmetic: {e}")

    def visit_Test(self, node: Test) -> bool:
        if node.name in DEFINED_TESTS:
            try:
                self.visit(node.operand)
                defined = True
            except UndefinedVariable:
                defined = False
            return defined if node.name == 'defined' else not defined
        func = TESTS.get(node.name)
        if func is None:
            raise self.error(f"Unknown test: {node.name}")
        value = self.visit(node.operand)
        args = [self.visit(a) for a in node.args]
        return bool(func(value, *args))

    def visit_Filter(self, node: Filter) -> Any:
        args = [self.visit(a) for a in node.args]
        kwargs = {k: self.visit(v) for k, v in node.kwargs}
        if node.name in DEFAULT_FILTERS:
            fallback = args[0] if args else kwargs.get('default_value', '')
            boolean = args[1] if len(args) > 1 else kwargs.get('boolean', False)
            try:
                value = self.visit(node.operand)
            except UndefinedVariable:
                return fallback
            if value is None or (boolean and not truthy(value)):
                return fallback
            return value
        func = FILTERS.get(node.name)
        if func is None:
            raise self.error(f"Unknown filter: {node.name}")
        value = self.visit(node.operand)
        try:
            return func(value, *args, **kwargs)
        except ExpressionError:
            raise
        except (TypeError, ValueError, AttributeError) as e:
            raise self.error(f"Filter '{node.name}' failed: {e}")

    def visit_ListExpr(self, node: ListExpr) -> List[Any]:
        return [self.visit(i) for i in node.items]

    def visit_DictExpr(self, node: DictExpr) -> Dict[Any, Any]:
        return {self.visit(k): self.visit(v) for k, v in node.pairs}

    def visit_CondExpr(self, node: CondExpr) -> Any:
        if truthy(self.visit(node.test)):
            return self.visit(node.then)
        if node.otherwise is None:
            return None
        return self.visit(node.otherwise)

    def visit_Template(self, node: Template) -> str:
        return "".join(
            part if isinstance(part, str) else _to_text(self.visit(part))
            for part in node.parts
        )


def evaluate(source: str, scope: Any) -> Any:
    """Evaluate a bare expression and return its native value."""
    return Evaluator(scope, source).visit(compile_expression(source))


def render(value: Any, scope: Any) -> Any:
    """
    Interpolate ``{{ }}`` markers in a value.

    Dicts and lists are rendered recursively, other scalars pass through.

    Raises:
        UndefinedVariable: a referenced name is not defined
        ExpressionError: the text is not a valid expression
    """
    if isinstance(value, str):
        if not is_template(value):
            return value
        return Evaluator(scope, value).visit(compile_template(value))
    if isinstance(value, dict):
        return {
            render(k, scope) if isinstance(k, str) else k: render(v, scope)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [render(item, scope) for item in value]
    return value
