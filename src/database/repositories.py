"""
Repositories over the SQLAlchemy models.

Each repository wraps one AsyncSession and commits its own writes. Version
activation deactivates siblings and activates the target inside a single
transaction so readers never observe two active versions.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipelines.exceptions import BindingConflict, DuplicateRecord, RecordNotFound
from src.pipelines.models import NodeStatus, RunStatus
from src.versioning.models import (
    FlowRecord, PipelineVersionRecord, PromptAssetRecord, StepVersionRecord
)
from .models import (
    DomainPhase, DomainPhaseStep, PipelineDefinition, PipelineRun, PipelineVersion,
    ProjectFlow, PromptAsset, StepDefinition, StepRun, StepVersion
)

logger = logging.getLogger(__name__)


def dag_step_references(dag: Any) -> Dict[str, Set[str]]:
    """Collect the step version ids and bare step ids referenced by DAG nodes"""
    nodes = (dag or {}).get("nodes") if isinstance(dag, dict) else None
    if isinstance(nodes, dict):
        nodes = list(nodes.values())
    if not isinstance(nodes, list):
        nodes = []

    refs: Dict[str, Set[str]] = {"stepVersionIds": set(), "stepIds": set()}
    for node in nodes:
        if not isinstance(node, dict):
            continue
        if isinstance(node.get("stepVersionId"), str):
            refs["stepVersionIds"].add(node["stepVersionId"])
        elif isinstance(node.get("stepId"), str):
            refs["stepIds"].add(node["stepId"])
    return refs


class PipelineRepository:
    """Pipeline definitions and their versions"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_pipelines(self) -> List[PipelineDefinition]:
        result = await self.session.execute(select(PipelineDefinition).order_by(PipelineDefinition.name))
        return list(result.scalars().all())

    async def create_pipeline(self, name: str, description: Optional[str] = None) -> PipelineDefinition:
        existing = await self.session.execute(select(PipelineDefinition).where(PipelineDefinition.name == name))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRecord("Pipeline", name)

        pipeline = PipelineDefinition(name=name, description=description)
        self.session.add(pipeline)
        await self.session.commit()
        logger.info(f"Created pipeline {pipeline.id} ({name})")
        return pipeline

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition:
        pipeline = await self.session.get(PipelineDefinition, pipeline_id)
        if pipeline is None:
            raise RecordNotFound("Pipeline", pipeline_id)
        return pipeline

    async def list_versions(self, pipeline_id: str) -> List[PipelineVersion]:
        await self.get_pipeline(pipeline_id)
        result = await self.session.execute(
            select(PipelineVersion)
            .where(PipelineVersion.pipeline_id == pipeline_id)
            .order_by(PipelineVersion.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_version(
        self,
        pipeline_id: str,
        version: str,
        dag: Dict[str, Any],
        config: Optional[Dict[str, Any]] = None,
        is_active: bool = False
    ) -> PipelineVersion:
        """Create a version; when created active it replaces the current active one"""
        await self.get_pipeline(pipeline_id)
        existing = await self.session.execute(
            select(PipelineVersion).where(
                PipelineVersion.pipeline_id == pipeline_id,
                PipelineVersion.version == version
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRecord("PipelineVersion", version)

        if is_active:
            await self.session.execute(
                update(PipelineVersion)
                .where(PipelineVersion.pipeline_id == pipeline_id)
                .values(is_active=False)
            )

        record = PipelineVersion(
            pipeline_id=pipeline_id,
            version=version,
            dag=dag,
            config=config or {},
            is_active=is_active
        )
        self.session.add(record)
        await self.session.commit()
        logger.info(f"Created pipeline version {record.id} ({version}) for pipeline {pipeline_id}")
        return record

    async def get_version(self, pipeline_id: str, version: str) -> PipelineVersion:
        """Look a version up by label, or by id"""
        result = await self.session.execute(
            select(PipelineVersion).where(
                PipelineVersion.pipeline_id == pipeline_id,
                or_(PipelineVersion.version == version, PipelineVersion.id == version)
            )
        )
        record = result.scalars().first()
        if record is None:
            raise RecordNotFound("PipelineVersion", version)
        return record

    async def get_version_by_id(self, pipeline_version_id: str) -> Optional[PipelineVersion]:
        return await self.session.get(PipelineVersion, pipeline_version_id)

    async def get_active_version(self, pipeline_id: str) -> Optional[PipelineVersion]:
        result = await self.session.execute(
            select(PipelineVersion).where(
                PipelineVersion.pipeline_id == pipeline_id,
                PipelineVersion.is_active.is_(True)
            )
        )
        return result.scalars().first()

    async def replace_dag(self, pipeline_id: str, version: str, dag: Dict[str, Any]) -> PipelineVersion:
        record = await self.get_version(pipeline_id, version)
        record.dag = dag
        await self.session.commit()
        return record

    async def activate_version(self, pipeline_id: str, version: str) -> PipelineVersion:
        """Make one version active and every sibling inactive in one transaction"""
        record = await self.get_version(pipeline_id, version)
        await self.session.execute(
            update(PipelineVersion)
            .where(PipelineVersion.pipeline_id == pipeline_id, PipelineVersion.id != record.id)
            .values(is_active=False)
        )
        record.is_active = True
        await self.session.commit()
        logger.info(f"Activated pipeline version {record.id} ({record.version}) for pipeline {pipeline_id}")
        return record


class StepRepository:
    """Step definitions, step versions and prompt assets"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_step(self, key: str, name: str, description: Optional[str] = None) -> StepDefinition:
        existing = await self.session.execute(select(StepDefinition).where(StepDefinition.key == key))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRecord("Step", key)

        step = StepDefinition(key=key, name=name, description=description)
        self.session.add(step)
        await self.session.commit()
        return step

    async def get_step(self, step_id: str) -> StepDefinition:
        step = await self.session.get(StepDefinition, step_id)
        if step is None:
            raise RecordNotFound("Step", step_id)
        return step

    async def get_steps(self, step_ids: Set[str]) -> List[StepDefinition]:
        if not step_ids:
            return []
        result = await self.session.execute(
            select(StepDefinition).where(StepDefinition.id.in_(step_ids)).order_by(StepDefinition.key)
        )
        return list(result.scalars().all())

    async def create_version(
        self,
        step_id: str,
        version: str,
        default_config: Optional[Dict[str, Any]] = None,
        prompt: Optional[str] = None,
        production_prompt_id: Optional[str] = None,
        default_prompt_id: Optional[str] = None,
        is_active: bool = False
    ) -> StepVersion:
        await self.get_step(step_id)
        existing = await self.session.execute(
            select(StepVersion).where(StepVersion.step_id == step_id, StepVersion.version == version)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRecord("StepVersion", version)

        for asset_id in (production_prompt_id, default_prompt_id):
            if asset_id:
                await self.get_prompt_asset(asset_id)

        if is_active:
            await self.session.execute(
                update(StepVersion).where(StepVersion.step_id == step_id).values(is_active=False)
            )

        record = StepVersion(
            step_id=step_id,
            version=version,
            default_config=default_config or {},
            prompt=prompt,
            production_prompt_id=production_prompt_id,
            default_prompt_id=default_prompt_id,
            is_active=is_active
        )
        self.session.add(record)
        await self.session.commit()
        return record

    async def get_version(self, step_id: str, version: str) -> StepVersion:
        result = await self.session.execute(
            select(StepVersion).where(
                StepVersion.step_id == step_id,
                or_(StepVersion.version == version, StepVersion.id == version)
            )
        )
        record = result.scalars().first()
        if record is None:
            raise RecordNotFound("StepVersion", version)
        return record

    async def get_version_by_id(self, step_version_id: str) -> StepVersion:
        record = await self.session.get(StepVersion, step_version_id)
        if record is None:
            raise RecordNotFound("StepVersion", step_version_id)
        return record

    async def get_versions(self, step_version_ids: Set[str]) -> List[StepVersion]:
        if not step_version_ids:
            return []
        result = await self.session.execute(select(StepVersion).where(StepVersion.id.in_(step_version_ids)))
        return list(result.scalars().all())

    async def activate_version(self, step_id: str, version: str) -> StepVersion:
        """Same single-active rule as pipeline versions, scoped to one step"""
        record = await self.get_version(step_id, version)
        await self.session.execute(
            update(StepVersion)
            .where(StepVersion.step_id == step_id, StepVersion.id != record.id)
            .values(is_active=False)
        )
        record.is_active = True
        await self.session.commit()
        logger.info(f"Activated step version {record.id} ({record.version}) for step {step_id}")
        return record

    async def create_prompt_asset(
        self,
        name: str,
        prompt_content: Any,
        description: Optional[str] = None,
        ir_schema: Any = None
    ) -> PromptAsset:
        asset = PromptAsset(name=name, description=description, prompt_content=prompt_content, ir_schema=ir_schema)
        self.session.add(asset)
        await self.session.commit()
        return asset

    async def get_prompt_asset(self, asset_id: str) -> PromptAsset:
        asset = await self.session.get(PromptAsset, asset_id)
        if asset is None:
            raise RecordNotFound("PromptAsset", asset_id)
        return asset

    async def set_prompt(self, step_version_id: str, slot: str, asset_id: Optional[str]) -> StepVersion:
        """
        Point the production or default prompt of a step version at an asset.

        Passing None clears the slot so resolution falls through to the next
        source.
        """
        if slot not in ("production", "default"):
            raise ValueError(f"Unknown prompt slot: {slot}")

        record = await self.get_version_by_id(step_version_id)
        if asset_id:
            await self.get_prompt_asset(asset_id)

        if slot == "production":
            record.production_prompt_id = asset_id
        else:
            record.default_prompt_id = asset_id
        await self.session.commit()
        return record


class FlowRepository:
    """Project flows, their pipeline binding, phases and phase steps"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_flow(self, flow_id: str) -> ProjectFlow:
        flow = await self.session.get(ProjectFlow, flow_id)
        if flow is None:
            raise RecordNotFound("ProjectFlow", flow_id)
        return flow

    async def _check_binding(self, pipeline_id: Optional[str], pinned_pipeline_version_id: Optional[str]) -> Optional[str]:
        """Validate a pipeline/pin pair and return the pipeline id to bind"""
        if pipeline_id and await self.session.get(PipelineDefinition, pipeline_id) is None:
            raise RecordNotFound("Pipeline", pipeline_id)

        if not pinned_pipeline_version_id:
            return pipeline_id

        pinned = await self.session.get(PipelineVersion, pinned_pipeline_version_id)
        if pinned is None:
            raise BindingConflict("pinned_pipeline_version_not_found")
        if pipeline_id and pipeline_id != pinned.pipeline_id:
            raise BindingConflict(
                "pinned_version_pipeline_mismatch",
                f"Pipeline version '{pinned.id}' does not belong to pipeline '{pipeline_id}'"
            )
        return pipeline_id or pinned.pipeline_id

    async def create_flow(
        self,
        key: str,
        name: str,
        description: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        pinned_pipeline_version_id: Optional[str] = None
    ) -> ProjectFlow:
        existing = await self.session.execute(select(ProjectFlow).where(ProjectFlow.key == key))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRecord("ProjectFlow", key)

        pipeline_id = await self._check_binding(pipeline_id, pinned_pipeline_version_id)
        flow = ProjectFlow(
            key=key,
            name=name,
            description=description,
            pipeline_id=pipeline_id,
            pinned_pipeline_version_id=pinned_pipeline_version_id
        )
        self.session.add(flow)
        await self.session.commit()
        return flow

    async def bind_pipeline(
        self,
        flow_id: str,
        pipeline_id: Optional[str] = None,
        pinned_pipeline_version_id: Optional[str] = None
    ) -> ProjectFlow:
        """Bind a flow to a pipeline and optionally pin one of its versions"""
        if not pipeline_id and not pinned_pipeline_version_id:
            raise BindingConflict("nothing_to_update")

        flow = await self.get_flow(flow_id)
        next_pipeline_id = await self._check_binding(pipeline_id, pinned_pipeline_version_id)

        flow.pipeline_id = next_pipeline_id
        if pinned_pipeline_version_id:
            flow.pinned_pipeline_version_id = pinned_pipeline_version_id
        elif flow.pinned_pipeline_version_id:
            # A pin left over from another pipeline would silently win resolution
            current = await self.session.get(PipelineVersion, flow.pinned_pipeline_version_id)
            if current is None or current.pipeline_id != next_pipeline_id:
                flow.pinned_pipeline_version_id = None

        await self.session.commit()
        logger.info(f"Bound flow {flow.id} to pipeline {flow.pipeline_id} (pin={flow.pinned_pipeline_version_id})")
        return flow

    async def unpin(self, flow_id: str) -> ProjectFlow:
        """Drop the version pin; the pipeline binding stays"""
        flow = await self.get_flow(flow_id)
        flow.pinned_pipeline_version_id = None
        await self.session.commit()
        return flow

    async def effective_pipeline_version(self, flow: ProjectFlow) -> Optional[PipelineVersion]:
        if flow.pinned_pipeline_version_id:
            return await self.session.get(PipelineVersion, flow.pinned_pipeline_version_id)
        if flow.pipeline_id:
            return await PipelineRepository(self.session).get_active_version(flow.pipeline_id)
        return None

    async def _allowed_step_ids(self, version: PipelineVersion) -> Dict[str, Set[str]]:
        refs = dag_step_references(version.dag)
        step_versions = await StepRepository(self.session).get_versions(refs["stepVersionIds"])
        return {
            "stepIds": {sv.step_id for sv in step_versions} | refs["stepIds"],
            "stepVersionIds": {sv.id for sv in step_versions},
        }

    async def allowed_steps(self, flow_id: str) -> Dict[str, Any]:
        """Step definitions present in the flow's effective pipeline version"""
        flow = await self.get_flow(flow_id)
        version = await self.effective_pipeline_version(flow)
        if version is None:
            return {"allowedSteps": [], "pipelineBound": bool(flow.pipeline_id), "activePipelineVersion": None}

        allowed = await self._allowed_step_ids(version)
        steps = await StepRepository(self.session).get_steps(allowed["stepIds"])
        return {
            "allowedSteps": [step.to_dict() for step in steps],
            "pipelineBound": True,
            "activePipelineVersion": version.id,
        }

    async def add_phase(self, flow_id: str, name: str, order_index: Optional[int] = None) -> DomainPhase:
        await self.get_flow(flow_id)
        if order_index is None:
            result = await self.session.execute(
                select(DomainPhase.order_index)
                .where(DomainPhase.flow_id == flow_id)
                .order_by(DomainPhase.order_index.desc())
            )
            last = result.scalars().first()
            order_index = 0 if last is None else last + 1

        phase = DomainPhase(flow_id=flow_id, name=name, order_index=order_index)
        self.session.add(phase)
        await self.session.commit()
        return phase

    async def add_phase_step(
        self,
        phase_id: str,
        step_id: str,
        pinned_step_version_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> DomainPhaseStep:
        """
        Attach a step to a phase.

        When the flow resolves to a pipeline version the step (and its pin)
        must appear in that version's DAG; unbound flows accept any step.
        """
        phase = await self.session.get(DomainPhase, phase_id)
        if phase is None:
            raise RecordNotFound("DomainPhase", phase_id)
        await StepRepository(self.session).get_step(step_id)
        flow = await self.get_flow(phase.flow_id)

        allowed = None
        if flow.pinned_pipeline_version_id or flow.pipeline_id:
            version = await self.effective_pipeline_version(flow)
            if version is None:
                raise BindingConflict(
                    "pinned_pipeline_version_not_found" if flow.pinned_pipeline_version_id
                    else "no_active_pipeline_version_for_flow"
                )
            allowed = await self._allowed_step_ids(version)
            if not allowed["stepIds"]:
                raise BindingConflict("pipeline_version_has_no_steps")
            if step_id not in allowed["stepIds"]:
                raise BindingConflict("step_not_in_bound_pipeline")

        if pinned_step_version_id:
            pinned = await self.session.get(StepVersion, pinned_step_version_id)
            if pinned is None:
                raise BindingConflict("pinned_step_version_not_found")
            if pinned.step_id != step_id:
                raise BindingConflict(
                    "pinned_step_version_mismatch_step",
                    f"Step version '{pinned.id}' does not belong to step '{step_id}'"
                )
            if allowed is not None and allowed["stepVersionIds"] and pinned.id not in allowed["stepVersionIds"]:
                raise BindingConflict("pinned_step_version_not_in_pipeline")

        result = await self.session.execute(
            select(DomainPhaseStep.order_index)
            .where(DomainPhaseStep.phase_id == phase_id)
            .order_by(DomainPhaseStep.order_index.desc())
        )
        last = result.scalars().first()

        phase_step = DomainPhaseStep(
            phase_id=phase_id,
            step_id=step_id,
            pinned_step_version_id=pinned_step_version_id,
            order_index=0 if last is None else last + 1,
            params=params or {}
        )
        self.session.add(phase_step)
        await self.session.commit()
        return phase_step

    async def get_phase_step(self, phase_step_id: str) -> DomainPhaseStep:
        phase_step = await self.session.get(DomainPhaseStep, phase_step_id)
        if phase_step is None:
            raise RecordNotFound("DomainPhaseStep", phase_step_id)
        return phase_step


class SqlVersionCatalog:
    """VersionCatalog backed by the database"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_step_version(self, step_version_id: str) -> Optional[StepVersionRecord]:
        record = await self.session.get(StepVersion, step_version_id)
        return record.to_record() if record else None

    async def get_active_step_version(self, step_id: str) -> Optional[StepVersionRecord]:
        result = await self.session.execute(
            select(StepVersion).where(StepVersion.step_id == step_id, StepVersion.is_active.is_(True))
        )
        record = result.scalars().first()
        return record.to_record() if record else None

    async def get_prompt_asset(self, asset_id: str) -> Optional[PromptAssetRecord]:
        record = await self.session.get(PromptAsset, asset_id)
        return record.to_record() if record else None

    async def get_pipeline_version(self, pipeline_version_id: str) -> Optional[PipelineVersionRecord]:
        record = await self.session.get(PipelineVersion, pipeline_version_id)
        return record.to_record() if record else None

    async def get_active_pipeline_version(self, pipeline_id: str) -> Optional[PipelineVersionRecord]:
        record = await PipelineRepository(self.session).get_active_version(pipeline_id)
        return record.to_record() if record else None

    async def get_flow(self, flow_id: str) -> Optional[FlowRecord]:
        record = await self.session.get(ProjectFlow, flow_id)
        return record.to_record() if record else None


class RunRepository:
    """
    Run store backed by pipeline_runs / step_runs.

    Also serves as the coordinator's observer. Batch members report
    transitions concurrently, so session access is serialized with a lock.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._lock = asyncio.Lock()

    async def create_run(
        self,
        pipeline_version_id: str,
        status: RunStatus,
        origin: str,
        origin_info: Optional[Dict[str, Any]],
        summary: Dict[str, Any]
    ) -> str:
        async with self._lock:
            run = PipelineRun(
                pipeline_version_id=pipeline_version_id,
                status=status.value,
                origin=origin,
                origin_info=origin_info,
                summary=dict(summary),
                metrics={},
                started_at=datetime.now(timezone.utc) if status == RunStatus.RUNNING else None
            )
            self.session.add(run)
            await self.session.commit()
            return run.id

    async def register_nodes(self, run_id: str, graph, resolved: Mapping[str, Any]) -> None:
        async with self._lock:
            for position, key in enumerate(graph.keys):
                self.session.add(StepRun(
                    pipeline_run_id=run_id,
                    node_key=key,
                    position=position,
                    step_version_id=resolved[key].step_version.id,
                    status=NodeStatus.PENDING.value,
                    attempts=0,
                    prompt_source=resolved[key].prompt.source.value,
                    params=dict(graph.node(key).params)
                ))
            await self.session.commit()

    async def _step_run(self, run_id: str, node_key: str) -> StepRun:
        result = await self.session.execute(
            select(StepRun).where(StepRun.pipeline_run_id == run_id, StepRun.node_key == node_key)
        )
        step_run = result.scalar_one_or_none()
        if step_run is None:
            raise RecordNotFound("StepRun", f"{run_id}/{node_key}")
        return step_run

    async def node_status_changed(self, run_id: str, state, metrics: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            step_run = await self._step_run(run_id, state.key)
            step_run.status = state.status.value
            step_run.attempts = state.attempts
            step_run.error = state.error
            step_run.started_at = state.started_at
            step_run.completed_at = state.completed_at
            if state.started_at and state.completed_at:
                step_run.duration_ms = (state.completed_at - state.started_at).total_seconds() * 1000
            if metrics is not None:
                step_run.metrics = dict(metrics)
            await self.session.commit()

    async def run_finished(self, run_id: str, outcome) -> None:
        async with self._lock:
            if not self.session.is_active:
                # A failed write earlier in the run leaves the transaction needing a rollback
                await self.session.rollback()
            run = await self.session.get(PipelineRun, run_id)
            if run is None:
                raise RecordNotFound("PipelineRun", run_id)
            run.status = outcome.status.value
            run.metrics = dict(outcome.metrics)
            run.summary = {
                **(run.summary or {}),
                "diagnostics": list(outcome.diagnostics),
                "haltedBy": outcome.halted_by,
            }
            run.completed_at = datetime.now(timezone.utc)
            await self.session.commit()
            logger.info(f"Run {run_id} finished with status {run.status}")

    async def get_run(self, run_id: str) -> Dict[str, Any]:
        """Run record with its step runs in planned order"""
        run = await self.session.get(PipelineRun, run_id)
        if run is None:
            raise RecordNotFound("PipelineRun", run_id)

        result = await self.session.execute(
            select(StepRun).where(StepRun.pipeline_run_id == run_id).order_by(StepRun.position)
        )
        data = run.to_dict()
        data["steps"] = [step_run.to_dict() for step_run in result.scalars().all()]
        return data
