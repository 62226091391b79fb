"""
Project flows: pipeline binding and pinning, phases and phase steps
"""

from fastapi import APIRouter, Depends, status

from src.database import FlowRepository
from src.orchestration import PipelineEngine
from src.versioning import Pinned, VersionResolver, ref_for_phase_step
from .dependencies import get_flow_repository, get_pipeline_engine, get_version_resolver
from .schemas import ExecuteRequest, FlowCreate, FlowPipelineBinding, PhaseCreate, PhaseStepCreate

flows_router = APIRouter(tags=["flows"])


@flows_router.post("/flows", status_code=status.HTTP_201_CREATED)
async def create_flow(body: FlowCreate, repo: FlowRepository = Depends(get_flow_repository)):
    flow = await repo.create_flow(
        body.key,
        body.name,
        description=body.description,
        pipeline_id=body.pipeline_id,
        pinned_pipeline_version_id=body.pinned_pipeline_version_id
    )
    return {"success": True, "data": flow.to_dict()}


@flows_router.patch("/flows/{flow_id}/pipeline")
async def bind_pipeline(flow_id: str, body: FlowPipelineBinding, repo: FlowRepository = Depends(get_flow_repository)):
    flow = await repo.bind_pipeline(
        flow_id,
        pipeline_id=body.pipeline_id,
        pinned_pipeline_version_id=body.pinned_pipeline_version_id
    )
    return {"success": True, "data": flow.to_dict()}


@flows_router.patch("/flows/{flow_id}/pipeline/unpin")
async def unpin_pipeline(flow_id: str, repo: FlowRepository = Depends(get_flow_repository)):
    flow = await repo.unpin(flow_id)
    return {"success": True, "data": flow.to_dict()}


@flows_router.get("/flows/{flow_id}/pipeline-version")
async def get_flow_pipeline_version(
    flow_id: str,
    repo: FlowRepository = Depends(get_flow_repository),
    resolver: VersionResolver = Depends(get_version_resolver)
):
    """The pipeline version this flow would run right now"""
    flow = await repo.get_flow(flow_id)
    version = await resolver.resolve_pipeline_version(flow.to_record())
    return {
        "success": True,
        "data": {
            "flowId": flow.id,
            "pipelineVersionId": version.id,
            "pipelineId": version.pipeline_id,
            "version": version.version,
            "pinned": bool(flow.pinned_pipeline_version_id),
        }
    }


@flows_router.get("/flows/{flow_id}/allowed-steps")
async def get_allowed_steps(flow_id: str, repo: FlowRepository = Depends(get_flow_repository)):
    return {"success": True, "data": await repo.allowed_steps(flow_id)}


@flows_router.post("/flows/{flow_id}/phases", status_code=status.HTTP_201_CREATED)
async def create_phase(flow_id: str, body: PhaseCreate, repo: FlowRepository = Depends(get_flow_repository)):
    phase = await repo.add_phase(flow_id, body.name, order_index=body.order_index)
    return {"success": True, "data": phase.to_dict()}


@flows_router.post("/phases/{phase_id}/steps", status_code=status.HTTP_201_CREATED)
async def create_phase_step(phase_id: str, body: PhaseStepCreate, repo: FlowRepository = Depends(get_flow_repository)):
    phase_step = await repo.add_phase_step(
        phase_id,
        body.step_id,
        pinned_step_version_id=body.pinned_step_version_id,
        params=body.params
    )
    return {"success": True, "data": phase_step.to_dict()}


@flows_router.get("/phase-steps/{phase_step_id}/resolved-version")
async def get_phase_step_version(
    phase_step_id: str,
    repo: FlowRepository = Depends(get_flow_repository),
    resolver: VersionResolver = Depends(get_version_resolver)
):
    phase_step = (await repo.get_phase_step(phase_step_id)).to_record()
    step_version = await resolver.resolve_phase_step(phase_step)
    return {
        "success": True,
        "data": {
            "phaseStepId": phase_step.id,
            "stepId": phase_step.step_id,
            "stepVersionId": step_version.id,
            "version": step_version.version,
            "pinned": isinstance(ref_for_phase_step(phase_step), Pinned),
        }
    }


@flows_router.post("/flows/{flow_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_flow(
    flow_id: str,
    body: ExecuteRequest = ExecuteRequest(),
    engine: PipelineEngine = Depends(get_pipeline_engine)
):
    result = await engine.execute_flow(
        flow_id,
        dry_run=body.dry_run,
        origin=body.origin,
        origin_info=body.origin_info
    )
    return {"success": True, "data": result}
