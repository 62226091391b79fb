"""
Orchestration Layer - Pipeline DAG Execution Engine
Executes planned DAG batches with condition gating, retries and bounded parallelism
"""

from .coordinator import ExecutionCoordinator
from .engine import PipelineEngine, PreparedRun, RunStore, InMemoryRunStore
from .invocation import StepInvoker, NoopStepInvoker
from .run_state import RunState, RunOutcome, RunObserver, NullRunObserver, InvalidTransition

__all__ = [
    "ExecutionCoordinator",
    "PipelineEngine",
    "PreparedRun",
    "RunStore",
    "InMemoryRunStore",
    "StepInvoker",
    "NoopStepInvoker",
    "RunState",
    "RunOutcome",
    "RunObserver",
    "NullRunObserver",
    "InvalidTransition"
]
