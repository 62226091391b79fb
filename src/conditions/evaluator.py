"""
Condition Evaluator
Interprets parsed gate expressions against the run's metrics namespace
"""

from collections.abc import Mapping
from numbers import Real
from typing import Any, Optional

from .exceptions import ConditionError
from .expressions import BinaryOp, COMPARISON_OPERATORS, Expression, Literal, PropertyAccess, UnaryOp
from .parser import parse_condition


def evaluate_condition(expression: Optional[str], namespace: Mapping) -> bool:
    """
    Decide whether a node should run.

    An absent or blank condition always passes. Property paths that do not
    resolve evaluate to `None`, so conditions over metrics that are not yet
    populated come out falsy.

    Args:
        expression: Condition source or None
        namespace: Root names visible to the expression, e.g. `{"metrics": {...}}`

    Returns:
        Truthiness of the evaluated expression

    Raises:
        ConditionError: If the expression is malformed
    """
    if expression is None or (isinstance(expression, str) and not expression.strip()):
        return True

    tree = parse_condition(expression)
    return _truthy(_evaluate(tree, namespace))


def check_condition(expression: Optional[str]) -> Optional[str]:
    """Return a syntax diagnostic for a condition, or None when it parses"""
    if expression is None or (isinstance(expression, str) and not expression.strip()):
        return None
    try:
        parse_condition(expression)
    except ConditionError as e:
        return str(e)
    return None


def _evaluate(node: Expression, namespace: Mapping) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, PropertyAccess):
        return _lookup(namespace, node)

    if isinstance(node, UnaryOp):
        if node.op == "not":
            return not _truthy(_evaluate(node.operand, namespace))
        raise ConditionError(f"unsupported unary operator {node.op!r}")

    if isinstance(node, BinaryOp):
        if node.op == "and":
            return _truthy(_evaluate(node.left, namespace)) and _truthy(_evaluate(node.right, namespace))
        if node.op == "or":
            return _truthy(_evaluate(node.left, namespace)) or _truthy(_evaluate(node.right, namespace))
        if node.op in COMPARISON_OPERATORS:
            return _compare(node.op, _evaluate(node.left, namespace), _evaluate(node.right, namespace))
        raise ConditionError(f"unsupported operator {node.op!r}")

    raise ConditionError(f"unsupported expression node {type(node).__name__}")


def _lookup(namespace: Mapping, access: PropertyAccess) -> Any:
    """Walk mappings only; anything missing or non-mapping yields None"""
    current: Any = namespace
    for segment in access.path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if _is_number(left) and _is_number(right):
        return left == right
    if left is None or right is None:
        return left is None and right is None
    return type(left) is type(right) and left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return _equals(left, right)
    if op == "!=":
        return not _equals(left, right)

    comparable = (
        (_is_number(left) and _is_number(right))
        or (isinstance(left, str) and isinstance(right, str))
    )
    if not comparable:
        return False

    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    return left >= right


def _truthy(value: Any) -> bool:
    return bool(value)
