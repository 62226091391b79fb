"""
Graph validation and planning exceptions
"""

from typing import TYPE_CHECKING, List, Optional, Sequence

from src.pipelines.exceptions import NodeScopedError

if TYPE_CHECKING:
    from .models import GraphIssue


class GraphError(NodeScopedError):
    """Base exception for structural DAG errors, raised before any execution"""

    code = "GraphError"

    def __init__(
        self,
        message: str,
        node_keys: Optional[Sequence[str]] = None,
        issues: Optional[List["GraphIssue"]] = None,
        **kwargs
    ):
        super().__init__(message, node_keys=node_keys, **kwargs)
        self.issues = list(issues or [])

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["issues"] = [issue.to_dict() for issue in self.issues]
        return payload


class InvalidNode(GraphError):
    """Exception raised when a node payload cannot be parsed"""
    code = "InvalidNode"


class DuplicateKey(GraphError):
    """Exception raised when two nodes share a key"""
    code = "DuplicateKey"


class UnknownDependency(GraphError):
    """Exception raised when a dependsOn entry or edge endpoint names no node"""
    code = "UnknownDependency"


class CycleDetected(GraphError):
    """Exception raised when the dependency graph is not acyclic"""
    code = "CycleDetected"


class UnresolvedStep(GraphError):
    """Exception raised when a node does not reference a step"""
    code = "UnresolvedStep"


GRAPH_ERRORS = {
    cls.code: cls
    for cls in (InvalidNode, DuplicateKey, UnknownDependency, CycleDetected, UnresolvedStep)
}

