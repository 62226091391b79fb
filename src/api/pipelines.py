"""
Pipeline definitions, versions, DAG editing, activation and execution
"""

import logging

from fastapi import APIRouter, Depends, status

from src.database import PipelineRepository
from src.orchestration import PipelineEngine
from src.pipelines.exceptions import RecordNotFound
from .dependencies import get_pipeline_engine, get_pipeline_repository
from .schemas import DagReplace, ExecuteRequest, PipelineCreate, PipelineVersionCreate

logger = logging.getLogger(__name__)

pipelines_router = APIRouter(prefix="/pipelines", tags=["pipelines"])


@pipelines_router.get("")
async def list_pipelines(repo: PipelineRepository = Depends(get_pipeline_repository)):
    pipelines = await repo.list_pipelines()
    return {"success": True, "data": [p.to_dict() for p in pipelines]}


@pipelines_router.post("", status_code=status.HTTP_201_CREATED)
async def create_pipeline(body: PipelineCreate, repo: PipelineRepository = Depends(get_pipeline_repository)):
    pipeline = await repo.create_pipeline(body.name, body.description)
    return {"success": True, "data": pipeline.to_dict()}


@pipelines_router.get("/{pipeline_id}/versions")
async def list_versions(pipeline_id: str, repo: PipelineRepository = Depends(get_pipeline_repository)):
    versions = await repo.list_versions(pipeline_id)
    return {"success": True, "data": [v.to_dict() for v in versions]}


@pipelines_router.post("/{pipeline_id}/versions", status_code=status.HTTP_201_CREATED)
async def create_version(
    pipeline_id: str,
    body: PipelineVersionCreate,
    repo: PipelineRepository = Depends(get_pipeline_repository)
):
    version = await repo.create_version(
        pipeline_id,
        body.version,
        dag=body.dag,
        config=body.config,
        is_active=body.is_active
    )
    return {"success": True, "data": version.to_dict()}


@pipelines_router.get("/{pipeline_id}/versions/active")
async def get_active_version(pipeline_id: str, repo: PipelineRepository = Depends(get_pipeline_repository)):
    await repo.get_pipeline(pipeline_id)
    version = await repo.get_active_version(pipeline_id)
    if version is None:
        raise RecordNotFound("ActivePipelineVersion", pipeline_id)
    return {"success": True, "data": version.to_dict()}


@pipelines_router.get("/{pipeline_id}/versions/{version}/dag")
async def get_dag(pipeline_id: str, version: str, repo: PipelineRepository = Depends(get_pipeline_repository)):
    record = await repo.get_version(pipeline_id, version)
    return {"success": True, "data": {"id": record.id, "version": record.version, "dag": record.dag}}


@pipelines_router.put("/{pipeline_id}/versions/{version}/dag")
async def replace_dag(
    pipeline_id: str,
    version: str,
    body: DagReplace,
    repo: PipelineRepository = Depends(get_pipeline_repository)
):
    record = await repo.replace_dag(pipeline_id, version, body.dag)
    return {"success": True, "data": {"id": record.id, "version": record.version, "dag": record.dag}}


@pipelines_router.post("/{pipeline_id}/versions/{version}/activate")
async def activate_version(pipeline_id: str, version: str, repo: PipelineRepository = Depends(get_pipeline_repository)):
    record = await repo.activate_version(pipeline_id, version)
    return {"success": True, "data": record.to_dict()}


@pipelines_router.post("/{pipeline_id}/versions/{version}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_version(
    pipeline_id: str,
    version: str,
    body: ExecuteRequest = ExecuteRequest(),
    repo: PipelineRepository = Depends(get_pipeline_repository),
    engine: PipelineEngine = Depends(get_pipeline_engine)
):
    """Plan the version and, unless `dryRun`, execute it to completion"""
    record = await repo.get_version(pipeline_id, version)
    result = await engine.plan_and_execute(
        record.id,
        dry_run=body.dry_run,
        origin=body.origin,
        origin_info=body.origin_info
    )
    logger.info(f"Pipeline version {record.id} run {result['pipelineRunId']} accepted (dry_run={body.dry_run})")
    return {"success": True, "data": result}
