"""
Condition expression tree (tagged variants evaluated by the interpreter)
"""

from dataclasses import dataclass
from typing import Any, Tuple, Union


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PropertyAccess:
    """Dotted path such as `metrics.validate.passed`"""
    path: Tuple[str, ...]

    def __str__(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expression"


Expression = Union[Literal, PropertyAccess, BinaryOp, UnaryOp]

COMPARISON_OPERATORS = ("==", "!=", "<=", ">=", "<", ">")
