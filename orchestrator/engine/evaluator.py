# ============================================================================
# RULE EVALUATOR
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Guard and extraction expression evaluation
# PURPOSE: Evaluate rule expressions against a run context snapshot
# CREATED: 18 OCT 2026
# ============================================================================
"""
Rule Evaluator

Evaluates rule expressions used for step guards, output extraction and
filter sources.

Grammar is Python-expression shaped and parsed with the ``ast`` module; only
the node types handled below are accepted.

Supports:
- Literals: numbers, strings, true/false/null, lists, objects
- Variable access: amount, trigger.customer.id, items[0], headers["x-id"]
- Arithmetic: + - * / // % and unary minus (+ also joins two strings)
- Comparison: == != < <= > >= (chainable), in, not in
- Logical: and, or, not (also &&, ||, !)
- Conditional: a if cond else b
- Functions: len, lower, upper, str, int, float, timestamp

Typing is strict: a missing variable raises UnknownVariableError, never
defaults, and mixing types (1 + "1", "5" > 3, true == 1) raises
TypeMismatchError. null may be compared with == and != against anything.

The evaluator is stateless - it never mutates the context it reads, and the
same expression over the same context always yields the same value.
"""

import ast
import copy
import logging
import math
import operator
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from core.errors import (
    EvalError,
    ExpressionSyntaxError,
    TypeMismatchError,
    UnknownVariableError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# PARSING
# ============================================================================

# String literals are matched first so operators inside them are left alone
_NORMALIZE_PATTERN = re.compile(
    r'("(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\')|(&&)|(\|\|)|(!(?!=))'
)


def _normalize(expression: str) -> str:
    """Rewrite &&, || and ! into Python's and/or/not."""
    def replace(match: re.Match) -> str:
        if match.group(1):
            return match.group(1)
        if match.group(2):
            return " and "
        if match.group(3):
            return " or "
        return " not "

    return _NORMALIZE_PATTERN.sub(replace, expression)


@lru_cache(maxsize=1024)
def _parse(expression: str) -> ast.Expression:
    normalized = _normalize(expression).strip()
    if not normalized:
        raise ExpressionSyntaxError("Empty expression")
    try:
        return ast.parse(normalized, mode="eval")
    except SyntaxError as e:
        raise ExpressionSyntaxError(f"Invalid expression '{expression}': {e.msg}") from e


# ============================================================================
# TYPE HELPERS
# ============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _same_kind(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    return _type_name(left) == _type_name(right)


def _require_finite(value: Any, where: str) -> Any:
    """Reject inf and nan, which have no JSON form."""
    if isinstance(value, float) and not math.isfinite(value):
        raise TypeMismatchError(f"{where} produced a non-finite number")
    return value


def _require_bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise TypeMismatchError(f"{where} expects a boolean, got {_type_name(value)}")
    return value


# ============================================================================
# FUNCTIONS
# ============================================================================

def _fn_len(value: Any) -> int:
    if not isinstance(value, (str, list, dict)):
        raise TypeMismatchError(f"len() expects string, list or object, got {_type_name(value)}")
    return len(value)


def _fn_lower(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeMismatchError(f"lower() expects a string, got {_type_name(value)}")
    return value.lower()


def _fn_upper(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeMismatchError(f"upper() expects a string, got {_type_name(value)}")
    return value.upper()


def _fn_str(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        raise TypeMismatchError(f"str() cannot convert {_type_name(value)}")
    return str(value)


def _fn_int(value: Any) -> int:
    if _is_number(value):
        return int(_require_finite(value, "int()"))
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise TypeMismatchError(f"int() cannot parse '{value}'")
    raise TypeMismatchError(f"int() cannot convert {_type_name(value)}")


def _fn_float(value: Any) -> float:
    if _is_number(value):
        try:
            return _require_finite(float(value), "float()")
        except OverflowError:
            raise TypeMismatchError("float() argument is too large")
    if isinstance(value, str):
        try:
            return _require_finite(float(value.strip()), "float()")
        except ValueError:
            raise TypeMismatchError(f"float() cannot parse '{value}'")
    raise TypeMismatchError(f"float() cannot convert {_type_name(value)}")


def _fn_timestamp(value: Any) -> float:
    """ISO-8601 string to epoch seconds (naive values are taken as UTC)."""
    if not isinstance(value, str):
        raise TypeMismatchError(f"timestamp() expects a string, got {_type_name(value)}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise TypeMismatchError(f"timestamp() cannot parse '{value}'")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# ============================================================================
# RULE EVALUATOR
# ============================================================================

class RuleEvaluator:
    """
    Evaluates rule expressions.

    Usage:
        evaluator = RuleEvaluator()
        evaluator.evaluate("amount > 100", {"amount": 150})  # True
    """

    LITERAL_NAMES = {
        "true": True,
        "false": False,
        "null": None,
        "True": True,
        "False": False,
        "None": None,
    }

    ARITHMETIC_OPERATORS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }

    ORDERING_OPERATORS = {
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
    }

    FUNCTIONS: Dict[str, Callable[[Any], Any]] = {
        "len": _fn_len,
        "lower": _fn_lower,
        "upper": _fn_upper,
        "str": _fn_str,
        "int": _fn_int,
        "float": _fn_float,
        "timestamp": _fn_timestamp,
    }

    def evaluate(self, expression: str, context: Dict[str, Any]) -> Any:
        """
        Evaluate an expression.

        Args:
            expression: Rule expression (e.g., "trigger.amount > 100")
            context: Variable bindings (not modified)

        Returns:
            The expression value (a copy, never a reference into context)

        Raises:
            UnknownVariableError: Referenced name or key is missing
            TypeMismatchError: Operands have incompatible types
            ExpressionSyntaxError: Expression cannot be parsed
        """
        if not isinstance(expression, str):
            raise ExpressionSyntaxError(f"Expression must be a string, got {type(expression).__name__}")
        tree = _parse(expression)
        return copy.deepcopy(self._eval(tree.body, context))

    def evaluate_guard(self, expression: str, context: Dict[str, Any]) -> bool:
        """Evaluate an expression that must produce a boolean."""
        result = self.evaluate(expression, context)
        if not isinstance(result, bool):
            raise TypeMismatchError(
                f"Guard '{expression}' must evaluate to a boolean, got {_type_name(result)}"
            )
        return result

    # ------------------------------------------------------------------------
    # Node dispatch
    # ------------------------------------------------------------------------

    def _eval(self, node: ast.AST, context: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            if node.value is None or isinstance(node.value, (bool, int, float, str)):
                return node.value
            raise ExpressionSyntaxError(f"Unsupported literal: {node.value!r}")

        if isinstance(node, ast.Name):
            return self._eval_name(node, context)

        if isinstance(node, ast.Attribute):
            return self._eval_attribute(node, context)

        if isinstance(node, ast.Subscript):
            return self._eval_subscript(node, context)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(item, context) for item in node.elts]

        if isinstance(node, ast.Dict):
            return self._eval_dict(node, context)

        if isinstance(node, ast.BoolOp):
            return self._eval_bool_op(node, context)

        if isinstance(node, ast.UnaryOp):
            return self._eval_unary(node, context)

        if isinstance(node, ast.BinOp):
            return self._eval_binary(node, context)

        if isinstance(node, ast.Compare):
            return self._eval_compare(node, context)

        if isinstance(node, ast.IfExp):
            test = _require_bool(self._eval(node.test, context), "Conditional")
            return self._eval(node.body if test else node.orelse, context)

        if isinstance(node, ast.Call):
            return self._eval_call(node, context)

        raise ExpressionSyntaxError(f"Unsupported expression: {type(node).__name__}")

    # ------------------------------------------------------------------------
    # Variable access
    # ------------------------------------------------------------------------

    def _eval_name(self, node: ast.Name, context: Dict[str, Any]) -> Any:
        if node.id in self.LITERAL_NAMES:
            return self.LITERAL_NAMES[node.id]
        if node.id not in context:
            raise UnknownVariableError(node.id)
        return context[node.id]

    def _eval_attribute(self, node: ast.Attribute, context: Dict[str, Any]) -> Any:
        base = self._eval(node.value, context)
        if not isinstance(base, dict):
            raise TypeMismatchError(
                f"Cannot read '.{node.attr}' from {_type_name(base)} in '{ast.unparse(node)}'"
            )
        if node.attr not in base:
            raise UnknownVariableError(ast.unparse(node))
        return base[node.attr]

    def _eval_subscript(self, node: ast.Subscript, context: Dict[str, Any]) -> Any:
        if isinstance(node.slice, ast.Slice):
            raise ExpressionSyntaxError("Slices are not supported")
        base = self._eval(node.value, context)
        key = self._eval(node.slice, context)

        if isinstance(base, dict):
            if not isinstance(key, str):
                raise TypeMismatchError(f"Object keys must be strings, got {_type_name(key)}")
            if key not in base:
                raise UnknownVariableError(ast.unparse(node))
            return base[key]

        if isinstance(base, (list, str)):
            if not isinstance(key, int) or isinstance(key, bool):
                raise TypeMismatchError(f"Index must be an integer, got {_type_name(key)}")
            if not -len(base) <= key < len(base):
                raise UnknownVariableError(ast.unparse(node))
            return base[key]

        raise TypeMismatchError(f"Cannot index {_type_name(base)} in '{ast.unparse(node)}'")

    def _eval_dict(self, node: ast.Dict, context: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key_node, value_node in zip(node.keys, node.values):
            if key_node is None:
                raise ExpressionSyntaxError("Dict unpacking is not supported")
            key = self._eval(key_node, context)
            if not isinstance(key, str):
                raise TypeMismatchError(f"Object keys must be strings, got {_type_name(key)}")
            result[key] = self._eval(value_node, context)
        return result

    # ------------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------------

    def _eval_bool_op(self, node: ast.BoolOp, context: Dict[str, Any]) -> bool:
        is_and = isinstance(node.op, ast.And)
        label = "and" if is_and else "or"
        for value_node in node.values:
            value = _require_bool(self._eval(value_node, context), f"'{label}'")
            if is_and and not value:
                return False
            if not is_and and value:
                return True
        return is_and

    def _eval_unary(self, node: ast.UnaryOp, context: Dict[str, Any]) -> Any:
        operand = self._eval(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not _require_bool(operand, "'not'")
        if isinstance(node.op, (ast.USub, ast.UAdd)):
            if not _is_number(operand):
                raise TypeMismatchError(f"Unary minus expects a number, got {_type_name(operand)}")
            return -operand if isinstance(node.op, ast.USub) else operand
        raise ExpressionSyntaxError(f"Unsupported operator: {type(node.op).__name__}")

    def _eval_binary(self, node: ast.BinOp, context: Dict[str, Any]) -> Any:
        op_func = self.ARITHMETIC_OPERATORS.get(type(node.op))
        if op_func is None:
            raise ExpressionSyntaxError(f"Unsupported operator: {type(node.op).__name__}")

        left = self._eval(node.left, context)
        right = self._eval(node.right, context)

        if isinstance(node.op, ast.Add):
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right

        if not (_is_number(left) and _is_number(right)):
            raise TypeMismatchError(
                f"Cannot apply '{ast.unparse(node)}' to {_type_name(left)} and {_type_name(right)}"
            )

        try:
            result = op_func(left, right)
        except ZeroDivisionError:
            raise EvalError(f"Division by zero in '{ast.unparse(node)}'")
        except OverflowError:
            raise TypeMismatchError(f"Numeric overflow in '{ast.unparse(node)}'")
        return _require_finite(result, f"'{ast.unparse(node)}'")

    def _eval_compare(self, node: ast.Compare, context: Dict[str, Any]) -> bool:
        left = self._eval(node.left, context)
        for op, right_node in zip(node.ops, node.comparators):
            right = self._eval(right_node, context)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, (ast.Eq, ast.NotEq)):
            if left is not None and right is not None and not _same_kind(left, right):
                raise TypeMismatchError(
                    f"Cannot compare {_type_name(left)} with {_type_name(right)}"
                )
            equal = left == right
            return equal if isinstance(op, ast.Eq) else not equal

        if type(op) in self.ORDERING_OPERATORS:
            numbers = _is_number(left) and _is_number(right)
            strings = isinstance(left, str) and isinstance(right, str)
            if not (numbers or strings):
                raise TypeMismatchError(
                    f"Cannot order {_type_name(left)} and {_type_name(right)}"
                )
            return self.ORDERING_OPERATORS[type(op)](left, right)

        if isinstance(op, (ast.In, ast.NotIn)):
            found = self._contains(right, left)
            return found if isinstance(op, ast.In) else not found

        raise ExpressionSyntaxError(f"Unsupported comparison: {type(op).__name__}")

    def _contains(self, container: Any, item: Any) -> bool:
        if isinstance(container, str):
            if not isinstance(item, str):
                raise TypeMismatchError(f"'in' on a string expects a string, got {_type_name(item)}")
            return item in container
        if isinstance(container, dict):
            if not isinstance(item, str):
                raise TypeMismatchError(f"'in' on an object expects a string key, got {_type_name(item)}")
            return item in container
        if isinstance(container, list):
            return any(
                _same_kind(item, element) and item == element or (item is None and element is None)
                for element in container
            )
        raise TypeMismatchError(f"'in' expects string, list or object, got {_type_name(container)}")

    def _eval_call(self, node: ast.Call, context: Dict[str, Any]) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in self.FUNCTIONS:
            raise ExpressionSyntaxError(f"Unknown function: {ast.unparse(node.func)}")
        if node.keywords or len(node.args) != 1:
            raise ExpressionSyntaxError(f"{node.func.id}() takes exactly one argument")
        argument = self._eval(node.args[0], context)
        return self.FUNCTIONS[node.func.id](argument)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

_evaluator: Optional[RuleEvaluator] = None


def get_evaluator() -> RuleEvaluator:
    """Get singleton rule evaluator."""
    global _evaluator
    if _evaluator is None:
        _evaluator = RuleEvaluator()
    return _evaluator


def evaluate(expression: str, context: Dict[str, Any]) -> Any:
    """
    Convenience function to evaluate an expression.

    Args:
        expression: Rule expression
        context: Variable bindings

    Returns:
        Expression value
    """
    return get_evaluator().evaluate(expression, context)


def evaluate_guard(expression: Optional[str], context: Dict[str, Any]) -> bool:
    """Evaluate a guard; an absent guard is true."""
    if expression is None or not expression.strip():
        return True
    return get_evaluator().evaluate_guard(expression, context)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RuleEvaluator",
    "get_evaluator",
    "evaluate",
    "evaluate_guard",
]
