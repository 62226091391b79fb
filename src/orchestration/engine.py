"""
Pipeline Engine
Composes validation, planning, resolution and execution into one entry point
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import structlog

from config.settings import settings
from src.conditions import check_condition
from src.pipelines.exceptions import RecordNotFound
from src.pipelines.models import NodeState, NodeStatus, RunStatus
from src.planner import load_graph, plan_graph
from src.planner.models import ExecutionPlan, NormalizedGraph
from src.versioning import VersionCatalog, VersionResolver
from src.versioning.models import PipelineVersionRecord, ResolvedNode
from .coordinator import ExecutionCoordinator
from .invocation import NoopStepInvoker, StepInvoker
from .run_state import RunOutcome

logger = structlog.get_logger(__name__)


class RunStore(Protocol):
    """Durable home of run records; also observes the coordinator"""

    async def create_run(
        self,
        pipeline_version_id: str,
        status: RunStatus,
        origin: str,
        origin_info: Optional[Dict[str, Any]],
        summary: Dict[str, Any]
    ) -> str:
        ...

    async def register_nodes(self, run_id: str, graph: NormalizedGraph, resolved: Mapping[str, ResolvedNode]) -> None:
        ...

    async def node_status_changed(
        self,
        run_id: str,
        state: NodeState,
        metrics: Optional[Dict[str, Any]] = None
    ) -> None:
        ...

    async def run_finished(self, run_id: str, outcome: RunOutcome) -> None:
        ...


class InMemoryRunStore:
    """Keeps run and step-run records in dictionaries"""

    def __init__(self):
        self.runs: Dict[str, Dict[str, Any]] = {}

    async def create_run(self, pipeline_version_id, status, origin, origin_info, summary) -> str:
        run_id = str(uuid.uuid4())
        self.runs[run_id] = {
            "id": run_id,
            "pipelineVersionId": pipeline_version_id,
            "status": status.value,
            "origin": origin,
            "originInfo": origin_info,
            "summary": dict(summary),
            "metrics": {},
            "steps": {},
            "startedAt": datetime.now(timezone.utc) if status == RunStatus.RUNNING else None,
            "completedAt": None,
        }
        return run_id

    async def register_nodes(self, run_id, graph, resolved) -> None:
        steps = self.runs[run_id]["steps"]
        for key in graph.keys:
            steps[key] = {
                "nodeKey": key,
                "stepVersionId": resolved[key].step_version.id,
                "status": NodeStatus.PENDING.value,
                "attempts": 0,
                "error": None,
                "promptSource": resolved[key].prompt.source.value,
                "params": dict(graph.node(key).params),
                "metrics": None,
            }

    async def node_status_changed(self, run_id, state, metrics=None) -> None:
        step = self.runs[run_id]["steps"][state.key]
        step.update(
            status=state.status.value,
            attempts=state.attempts,
            error=state.error,
            startedAt=state.started_at,
            completedAt=state.completed_at,
        )
        if metrics is not None:
            step["metrics"] = dict(metrics)

    async def run_finished(self, run_id, outcome) -> None:
        run = self.runs[run_id]
        run["status"] = outcome.status.value
        run["metrics"] = dict(outcome.metrics)
        run["summary"]["diagnostics"] = list(outcome.diagnostics)
        run["summary"]["haltedBy"] = outcome.halted_by
        run["completedAt"] = datetime.now(timezone.utc)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.runs.get(run_id)


@dataclass
class PreparedRun:
    """A pipeline version that passed validation, planning and resolution"""
    version: PipelineVersionRecord
    graph: NormalizedGraph
    plan: ExecutionPlan
    resolved: Dict[str, ResolvedNode]
    warnings: List[Dict[str, Any]]


class PipelineEngine:
    """
    Plans and executes pipeline versions.

    Graph and resolution errors abort before any run record is created, so a
    run only exists for a DAG that could actually be dispatched.
    """

    def __init__(
        self,
        catalog: VersionCatalog,
        run_store: RunStore,
        invoker: Optional[StepInvoker] = None,
        max_parallelism: Optional[int] = None,
        default_timeout_ms: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
        require_prompt: Optional[bool] = None
    ):
        self.catalog = catalog
        self.run_store = run_store
        self.invoker = invoker or NoopStepInvoker()
        self.resolver = VersionResolver(catalog)
        self.max_parallelism = max_parallelism or settings.ENGINE_MAX_PARALLELISM
        self.default_timeout_ms = default_timeout_ms if default_timeout_ms is not None else settings.DEFAULT_NODE_TIMEOUT_MS
        self.retry_backoff_ms = retry_backoff_ms if retry_backoff_ms is not None else settings.RETRY_BACKOFF_MS
        self.require_prompt = require_prompt if require_prompt is not None else settings.REQUIRE_PROMPT_SOURCE

    async def prepare(self, version: PipelineVersionRecord) -> PreparedRun:
        """Validate, plan and resolve a pipeline version without touching the run store"""
        graph = load_graph(version.dag, pipeline_version_id=version.id)
        plan = plan_graph(graph)
        resolved = await self.resolver.resolve_graph(
            graph,
            require_prompt=self.require_prompt,
            pipeline_version_id=version.id
        )

        warnings = []
        for key in plan.plan:
            diagnostic = check_condition(graph.node(key).condition)
            if diagnostic:
                warnings.append({"nodeKey": key, "code": "ConditionError", "message": diagnostic})

        return PreparedRun(version=version, graph=graph, plan=plan, resolved=resolved, warnings=warnings)

    async def plan_and_execute(
        self,
        pipeline_version_id: str,
        dry_run: bool = False,
        origin: Optional[str] = None,
        origin_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Plan a pipeline version and, unless dry-running, execute it.

        Args:
            pipeline_version_id: PipelineVersion to run
            dry_run: Only record a `planned` run with the computed plan
            origin: Who triggered the run, defaults to settings.DEFAULT_RUN_ORIGIN
            origin_info: Free-form context stored with the run

        Returns:
            `{pipelineRunId, plan, batches, warnings}` for a dry run, plus the
            terminal status, node states and metrics for a live run

        Raises:
            RecordNotFound: If the pipeline version does not exist
            GraphError: If the DAG is invalid
            ResolutionError: If any node cannot be resolved
        """
        version = await self.catalog.get_pipeline_version(pipeline_version_id)
        if version is None:
            raise RecordNotFound("PipelineVersion", pipeline_version_id)
        return await self._run_version(version, dry_run, origin, origin_info)

    async def execute_flow(
        self,
        flow_id: str,
        dry_run: bool = False,
        origin: Optional[str] = None,
        origin_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Run the pipeline version a project flow is pinned to or follows"""
        flow = await self.catalog.get_flow(flow_id)
        if flow is None:
            raise RecordNotFound("ProjectFlow", flow_id)

        version = await self.resolver.resolve_pipeline_version(flow)
        info = dict(origin_info or {})
        info.setdefault("flowId", flow.id)

        logger.info(
            "flow_pipeline_resolved",
            flow_id=flow.id,
            pipeline_version_id=version.id,
            pinned=bool(flow.pinned_pipeline_version_id)
        )
        return await self._run_version(version, dry_run, origin or "flow", info)

    async def _run_version(
        self,
        version: PipelineVersionRecord,
        dry_run: bool,
        origin: Optional[str],
        origin_info: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        prepared = await self.prepare(version)
        origin = origin or settings.DEFAULT_RUN_ORIGIN
        summary = {
            "plannedNodes": list(prepared.plan.plan),
            "batches": [list(batch) for batch in prepared.plan.batches],
        }

        if dry_run:
            summary["warnings"] = prepared.warnings
            run_id = await self.run_store.create_run(version.id, RunStatus.PLANNED, origin, origin_info, summary)
            logger.info(
                "pipeline_dry_run_planned",
                run_id=run_id,
                pipeline_version_id=version.id,
                node_count=len(prepared.graph)
            )
            return {
                "pipelineRunId": run_id,
                "dryRun": True,
                "status": RunStatus.PLANNED.value,
                "plan": list(prepared.plan.plan),
                "batches": summary["batches"],
                "warnings": prepared.warnings,
            }

        run_id = await self.run_store.create_run(version.id, RunStatus.RUNNING, origin, origin_info, summary)
        await self.run_store.register_nodes(run_id, prepared.graph, prepared.resolved)

        logger.info(
            "pipeline_run_started",
            run_id=run_id,
            pipeline_version_id=version.id,
            origin=origin
        )

        coordinator = ExecutionCoordinator(
            invoker=self.invoker,
            observer=self.run_store,
            max_parallelism=self.max_parallelism,
            default_timeout_ms=self.default_timeout_ms,
            retry_backoff_ms=self.retry_backoff_ms
        )
        try:
            outcome = await coordinator.execute(prepared.graph, prepared.plan, prepared.resolved, run_id=run_id)
        except Exception as e:
            await self._abort_run(run_id, e)
            raise

        result = outcome.to_dict()
        result.update(
            pipelineRunId=run_id,
            dryRun=False,
            plan=list(prepared.plan.plan),
            batches=summary["batches"],
            warnings=prepared.warnings,
        )
        return result

    async def _abort_run(self, run_id: str, error: Exception) -> None:
        """Record a run whose execution raised as failed so it never stays `running`"""
        message = f"{type(error).__name__}: {error}"
        logger.error("pipeline_run_aborted", run_id=run_id, error=message)

        outcome = RunOutcome(
            run_id=run_id,
            status=RunStatus.FAILED,
            nodes={},
            metrics={},
            diagnostics=[{"nodeKey": None, "code": "ExecutionAborted", "message": message}]
        )
        try:
            await self.run_store.run_finished(run_id, outcome)
        except Exception as store_error:
            logger.error("pipeline_run_abort_not_recorded", run_id=run_id, error=str(store_error))
