"""
Run state tracking
Per-node state machine, run metrics namespace and run observers
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from src.pipelines.models import NodeState, NodeStatus, RunStatus

ALLOWED_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.SKIPPED, NodeStatus.RUNNING},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.FAILED},
    NodeStatus.FAILED: {NodeStatus.FAILED_CONTINUED},
}


class InvalidTransition(RuntimeError):
    """Raised on a node status change the state machine does not allow"""


@dataclass
class RunOutcome:
    """Terminal result of executing a plan"""

    run_id: str
    status: RunStatus
    nodes: Dict[str, NodeState]
    metrics: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    halted_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "nodes": {
                key: {
                    "status": state.status.value,
                    "attempts": state.attempts,
                    "error": state.error,
                    "promptSource": state.prompt_source,
                }
                for key, state in self.nodes.items()
            },
            "metrics": self.metrics,
            "diagnostics": self.diagnostics,
            "haltedBy": self.halted_by,
        }


@dataclass
class RunState:
    """
    Mutable state of one run.

    `metrics` is the run-scoped namespace; each node writes its own key once,
    on completion.
    """

    run_id: str
    nodes: Dict[str, NodeState]
    metrics: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    halted_by: Optional[str] = None

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    def transition(self, key: str, status: NodeStatus, error: Optional[str] = None) -> NodeState:
        state = self.nodes[key]
        allowed = ALLOWED_TRANSITIONS.get(state.status, set())
        if status not in allowed:
            raise InvalidTransition(f"Node '{key}' cannot move from {state.status.value} to {status.value}")

        now = datetime.now(timezone.utc)
        state.status = status
        if status == NodeStatus.RUNNING:
            state.started_at = now
        elif status.is_terminal:
            state.completed_at = now
        if error is not None:
            state.error = error
        return state

    def record_metrics(self, key: str, metrics: Dict[str, Any]) -> None:
        if key in self.metrics:
            raise InvalidTransition(f"Metrics for node '{key}' were already recorded")
        self.metrics[key] = dict(metrics)

    def add_diagnostic(self, key: str, code: str, message: str) -> None:
        self.diagnostics.append({"nodeKey": key, "code": code, "message": message})

    def final_status(self) -> RunStatus:
        statuses = [state.status for state in self.nodes.values()]
        if self.halted or NodeStatus.FAILED in statuses:
            return RunStatus.FAILED
        if NodeStatus.FAILED_CONTINUED in statuses:
            return RunStatus.COMPLETED_WITH_FAILURES
        return RunStatus.SUCCEEDED

    def outcome(self) -> RunOutcome:
        return RunOutcome(
            run_id=self.run_id,
            status=self.final_status(),
            nodes={key: state.model_copy() for key, state in self.nodes.items()},
            metrics=dict(self.metrics),
            outputs=dict(self.outputs),
            diagnostics=list(self.diagnostics),
            halted_by=self.halted_by
        )


class RunObserver(Protocol):
    """Receives node status transitions and the final run outcome"""

    async def node_status_changed(
        self,
        run_id: str,
        state: NodeState,
        metrics: Optional[Dict[str, Any]] = None
    ) -> None:
        ...

    async def run_finished(self, run_id: str, outcome: RunOutcome) -> None:
        ...


class NullRunObserver:
    """Observer that records nothing"""

    async def node_status_changed(self, run_id, state, metrics=None) -> None:
        return None

    async def run_finished(self, run_id, outcome) -> None:
        return None
