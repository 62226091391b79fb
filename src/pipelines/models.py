"""
Pipeline DAG Data Classes - Pydantic v2 Implementation
Persisted DAG shape, node/run statuses and step invocation contracts
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeStatus(str, Enum):
    """Status of a single DAG node within a run"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    FAILED_CONTINUED = "failed-continued"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_NODE_STATUSES

    @property
    def is_resolved(self) -> bool:
        """Whether dependents may treat the node as done"""
        return self in (NodeStatus.SUCCEEDED, NodeStatus.SKIPPED, NodeStatus.FAILED_CONTINUED)


TERMINAL_NODE_STATUSES = frozenset({
    NodeStatus.SUCCEEDED,
    NodeStatus.FAILED,
    NodeStatus.SKIPPED,
    NodeStatus.FAILED_CONTINUED,
})


class RunStatus(str, Enum):
    """Aggregate status of a pipeline run"""
    PENDING = "pending"
    RUNNING = "running"
    PLANNED = "planned"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPLETED_WITH_FAILURES = "completed-with-failures"


class DagNode(BaseModel):
    """One step invocation within a pipeline version DAG"""
    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True,
        extra="ignore"
    )

    key: str = Field(..., min_length=1, description="Node key, unique within the DAG")
    step_version_id: Optional[str] = Field(default=None, alias="stepVersionId", description="Concrete StepVersion to run")
    step_id: Optional[str] = Field(default=None, alias="stepId", description="Step to follow when no version is named")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn", description="Keys this node waits for")
    order: Optional[float] = Field(default=None, description="Tie-break hint for planning")
    condition: Optional[str] = Field(default=None, description="Gate expression over run metrics")
    retries: int = Field(default=0, ge=0, description="Extra attempts after the first")
    timeout_ms: Optional[int] = Field(default=None, gt=0, alias="timeoutMs", description="Per-attempt deadline")
    parallel_group: Optional[str] = Field(default=None, alias="parallelGroup", description="Concurrency group label")
    continue_on_fail: bool = Field(default=False, alias="continueOnFail", description="Let dependents run after failure")
    params: Dict[str, Any] = Field(default_factory=dict, description="Invocation parameters")
    metric_profile_id: Optional[str] = Field(default=None, alias="metricProfileId", description="Metric profile reference")

    @field_validator('depends_on', mode='before')
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        """Treat a null dependsOn as empty"""
        return [] if v is None else v

    @field_validator('params', mode='before')
    @classmethod
    def coerce_params(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator('parallel_group', 'condition')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class DagEdge(BaseModel):
    """Alternate dependency notation: `to` depends on `from`"""
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(..., min_length=1, alias="from")
    target: str = Field(..., min_length=1, alias="to")


class PipelineDag(BaseModel):
    """Persisted DAG shape of a pipeline version"""
    model_config = ConfigDict(populate_by_name=True)

    nodes: Union[List[Dict[str, Any]], Dict[str, Dict[str, Any]]] = Field(default_factory=list)
    edges: Optional[List[Dict[str, Any]]] = Field(default=None)


class InvocationRequest(BaseModel):
    """Everything a step invoker needs to run one node attempt"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: Optional[str] = None
    node_key: str
    step_version_id: str
    prompt_source: str
    prompt_content: Any = None
    params: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=1, ge=1)


class StepInvocationResult(BaseModel):
    """Result returned by the external step invocation collaborator"""

    success: bool
    metrics: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None

    @field_validator('metrics', mode='before')
    @classmethod
    def coerce_metrics(cls, v: Any) -> Any:
        return {} if v is None else v


class NodeState(BaseModel):
    """Run-scoped state of one node"""
    model_config = ConfigDict(validate_assignment=True)

    key: str
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    prompt_source: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
