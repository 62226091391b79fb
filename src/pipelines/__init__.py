"""
Pipeline domain models shared by planner, resolver and coordinator
"""

from .exceptions import (
    PipelineEngineError, NodeScopedError, ExecutionError, StepTimeoutError, RecordNotFound,
    DuplicateRecord, BindingConflict
)
from .models import (
    DagNode, DagEdge, PipelineDag, NodeStatus, RunStatus, NodeState,
    InvocationRequest, StepInvocationResult
)

__all__ = [
    "PipelineEngineError",
    "NodeScopedError",
    "ExecutionError",
    "StepTimeoutError",
    "RecordNotFound",
    "DuplicateRecord",
    "BindingConflict",
    "DagNode",
    "DagEdge",
    "PipelineDag",
    "NodeStatus",
    "RunStatus",
    "NodeState",
    "InvocationRequest",
    "StepInvocationResult"
]
