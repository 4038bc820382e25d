"""Restricted expression language for field mappings.

An expression is a single Python-style expression over the variable
``value`` (the tool argument being mapped). It is parsed with ``ast`` and
interpreted by a whitelist walker: no attribute access beyond a fixed set of
string methods, no builtins beyond a fixed set of helpers, no loops or
comprehensions and no I/O.

Examples::

    value * 100
    upper(value)
    value.toUpperCase()
    value["city"] if value else "unknown"
    join(split(value, " "), "-")
"""

import ast
import operator
from functools import lru_cache
from typing import Any, Callable


MAX_EXPRESSION_LENGTH = 500
MAX_POWER_EXPONENT = 64
MAX_SEQUENCE_LENGTH = 10_000
MAX_INTEGER_BITS = 4096


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


def _join(items: Any, separator: str = ",") -> str:
    return str(separator).join(str(item) for item in items)


def _split(text: Any, separator: Any = None) -> list[str]:
    return str(text).split(separator)


def _replace(text: Any, old: Any, new: Any) -> str:
    return str(text).replace(str(old), str(new))


def _get(container: Any, key: Any, default: Any = None) -> Any:
    if isinstance(container, dict):
        return container.get(key, default)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else default
    return default


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "len": len,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "upper": lambda text: str(text).upper(),
    "lower": lambda text: str(text).lower(),
    "trim": lambda text: str(text).strip(),
    "concat": lambda *parts: "".join(str(part) for part in parts),
    "join": _join,
    "split": _split,
    "replace": _replace,
    "get": _get,
}

STRING_METHODS = frozenset({
    "upper", "lower", "strip", "lstrip", "rstrip", "split", "replace",
    "startswith", "endswith", "title", "capitalize", "join",
})

# JavaScript spellings found in mappings written for the web console
METHOD_ALIASES = {
    "toUpperCase": "upper",
    "toLowerCase": "lower",
    "trim": "strip",
}

CONSTANT_NAMES = {
    "True": True, "False": False, "None": None,
    "true": True, "false": False, "null": None,
}

BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS: dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

COMPARE_OPERATORS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


@lru_cache(maxsize=256)
def compile_expression(source: str) -> ast.Expression:
    """Parse an expression once; later calls hit the cache."""
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression exceeds {MAX_EXPRESSION_LENGTH} characters")
    try:
        return ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e
    except (ValueError, RecursionError, MemoryError) as e:
        raise ExpressionError("Expression is too complex") from e


def _check_size(result: Any) -> Any:
    if isinstance(result, (str, list, tuple)) and len(result) > MAX_SEQUENCE_LENGTH:
        raise ExpressionError("Expression result is too large")
    if isinstance(result, int) and not isinstance(result, bool) and result.bit_length() > MAX_INTEGER_BITS:
        raise ExpressionError("Expression result is too large")
    return result


class _Evaluator:
    """Walks a parsed expression, allowing only whitelisted node types."""

    def __init__(self, value: Any) -> None:
        self.value = value

    def visit(self, node: ast.AST) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return handler(node)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise ExpressionError("Unsupported literal")
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id == "value":
            return self.value
        if node.id in CONSTANT_NAMES:
            return CONSTANT_NAMES[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.visit(item) for item in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(item) for item in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        if any(key is None for key in node.keys):
            raise ExpressionError("Unsupported syntax: dict unpacking")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

        left = self.visit(node.left)
        right = self.visit(node.right)

        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_POWER_EXPONENT:
            raise ExpressionError("Exponent is too large")

        if isinstance(node.op, ast.Pow) and isinstance(left, int) and isinstance(right, int) and right > 0:
            if left.bit_length() * right > MAX_INTEGER_BITS:
                raise ExpressionError("Expression result is too large")

        if isinstance(node.op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise ExpressionError("Expression result is too large")

        # "+" between text and numbers concatenates
        if isinstance(node.op, ast.Add) and isinstance(left, str) != isinstance(right, str):
            if isinstance(left, (str, int, float)) and isinstance(right, (str, int, float)):
                left, right = str(left), str(right)

        return _check_size(op(left, right))

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return _check_size(op(self.visit(node.operand)))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for item in node.values:
            result = self.visit(item)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = COMPARE_OPERATORS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        container = self.visit(node.value)
        key = self.visit(node.slice)
        return container[key]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.visit(node.lower) if node.lower else None,
            self.visit(node.upper) if node.upper else None,
            self.visit(node.step) if node.step else None,
        )

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        # Only ``.length`` reads as a property; everything else must be called
        if node.attr == "length":
            return len(self.visit(node.value))
        raise ExpressionError(f"Attribute access is not allowed: {node.attr}")

    def _eval_Call(self, node: ast.Call) -> Any:
        args = [self.visit(arg) for arg in node.args]
        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise ExpressionError("Unsupported syntax: keyword unpacking")
            kwargs[keyword.arg] = self.visit(keyword.value)

        if isinstance(node.func, ast.Name):
            func = FUNCTIONS.get(node.func.id)
            if func is None:
                raise ExpressionError(f"Unknown function: {node.func.id}")
            return _check_size(func(*args, **kwargs))

        if isinstance(node.func, ast.Attribute):
            return _check_size(self._call_method(node.func, args, kwargs))

        raise ExpressionError("Unsupported call")

    def _call_method(self, func: ast.Attribute, args: list[Any], kwargs: dict[str, Any]) -> Any:
        name = func.attr
        if name.startswith("_"):
            raise ExpressionError(f"Method is not allowed: {name}")

        receiver = self.visit(func.value)
        if name == "toString":
            return str(receiver)

        name = METHOD_ALIASES.get(name, name)
        if name == "get" and isinstance(receiver, dict):
            return receiver.get(*args, **kwargs)
        if name not in STRING_METHODS:
            raise ExpressionError(f"Method is not allowed: {func.attr}")
        if not isinstance(receiver, str):
            raise ExpressionError(f"Method {func.attr} requires a string")
        return getattr(receiver, name)(*args, **kwargs)


def evaluate_expression(expression: str, value: Any) -> Any:
    """
    Evaluate an expression with ``value`` bound to the given argument.

    Raises:
        ExpressionError: If the expression is invalid, uses disallowed
            syntax, or fails while evaluating
    """
    tree = compile_expression(expression)
    try:
        return _Evaluator(value).visit(tree.body)
    except ExpressionError:
        raise
    except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError, OverflowError) as e:
        raise ExpressionError(f"{type(e).__name__}: {e}") from e
    except (RecursionError, MemoryError) as e:
        raise ExpressionError("Expression is too complex to evaluate") from e
