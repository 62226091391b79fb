"""
Condition language exceptions
"""

from typing import Optional

from src.pipelines.exceptions import PipelineEngineError


class ConditionError(PipelineEngineError):
    """Exception raised when a condition expression is malformed"""

    def __init__(self, message: str, expression: str = "", position: Optional[int] = None):
        super().__init__(message)
        self.expression = expression
        self.position = position

    def __str__(self) -> str:
        where = f" at position {self.position}" if self.position is not None else ""
        return f"Invalid condition{where}: {self.message}"
