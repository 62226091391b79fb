"""
Condition language for gating DAG node execution
Restricted boolean expressions over the run metrics namespace
"""

from .evaluator import evaluate_condition, check_condition
from .parser import parse_condition, tokenize
from .expressions import Literal, PropertyAccess, BinaryOp, UnaryOp, Expression
from .exceptions import ConditionError

__all__ = [
    "evaluate_condition",
    "check_condition",
    "parse_condition",
    "tokenize",
    "Literal",
    "PropertyAccess",
    "BinaryOp",
    "UnaryOp",
    "Expression",
    "ConditionError"
]
