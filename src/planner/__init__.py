"""
DAG Planning System
Graph normalization, validation and deterministic topological planning
"""

from .validator import validate_dag, load_graph
from .planner import plan_graph
from .models import GraphIssue, NormalizedGraph, ValidationResult, ExecutionPlan
from .exceptions import (
    GraphError, InvalidNode, DuplicateKey, UnknownDependency, CycleDetected, UnresolvedStep
)

__all__ = [
    "validate_dag",
    "load_graph",
    "plan_graph",
    "GraphIssue",
    "NormalizedGraph",
    "ValidationResult",
    "ExecutionPlan",
    "GraphError",
    "InvalidNode",
    "DuplicateKey",
    "UnknownDependency",
    "CycleDetected",
    "UnresolvedStep"
]
