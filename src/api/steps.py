"""
Step definitions, step versions and prompt assets
"""

from fastapi import APIRouter, Depends, status

from src.database import StepRepository
from src.versioning import VersionResolver
from .dependencies import get_step_repository, get_version_resolver
from .schemas import PromptAssetCreate, PromptBinding, StepCreate, StepVersionCreate

steps_router = APIRouter(tags=["steps"])


@steps_router.post("/steps", status_code=status.HTTP_201_CREATED)
async def create_step(body: StepCreate, repo: StepRepository = Depends(get_step_repository)):
    step = await repo.create_step(body.key, body.name, body.description)
    return {"success": True, "data": step.to_dict()}


@steps_router.post("/steps/{step_id}/versions", status_code=status.HTTP_201_CREATED)
async def create_step_version(
    step_id: str,
    body: StepVersionCreate,
    repo: StepRepository = Depends(get_step_repository)
):
    version = await repo.create_version(
        step_id,
        body.version,
        default_config=body.default_config,
        prompt=body.prompt,
        production_prompt_id=body.production_prompt_id,
        default_prompt_id=body.default_prompt_id,
        is_active=body.is_active
    )
    return {"success": True, "data": version.to_dict()}


@steps_router.post("/steps/{step_id}/versions/{version}/activate")
async def activate_step_version(step_id: str, version: str, repo: StepRepository = Depends(get_step_repository)):
    record = await repo.activate_version(step_id, version)
    return {"success": True, "data": record.to_dict()}


@steps_router.post("/prompt-assets", status_code=status.HTTP_201_CREATED)
async def create_prompt_asset(body: PromptAssetCreate, repo: StepRepository = Depends(get_step_repository)):
    asset = await repo.create_prompt_asset(
        body.name,
        body.prompt_content,
        description=body.description,
        ir_schema=body.ir_schema
    )
    return {"success": True, "data": asset.to_dict()}


@steps_router.put("/steps/versions/{step_version_id}/production-prompt")
async def set_production_prompt(
    step_version_id: str,
    body: PromptBinding,
    repo: StepRepository = Depends(get_step_repository)
):
    record = await repo.set_prompt(step_version_id, "production", body.prompt_asset_id)
    return {"success": True, "data": record.to_dict()}


@steps_router.put("/steps/versions/{step_version_id}/default-prompt")
async def set_default_prompt(
    step_version_id: str,
    body: PromptBinding,
    repo: StepRepository = Depends(get_step_repository)
):
    record = await repo.set_prompt(step_version_id, "default", body.prompt_asset_id)
    return {"success": True, "data": record.to_dict()}


@steps_router.get("/steps/versions/{step_version_id}/resolved-prompt")
async def get_resolved_prompt(
    step_version_id: str,
    repo: StepRepository = Depends(get_step_repository),
    resolver: VersionResolver = Depends(get_version_resolver)
):
    """Effective prompt by precedence: production, default, inline, none"""
    record = await repo.get_version_by_id(step_version_id)
    prompt = await resolver.resolve_prompt(record.to_record())
    return {"success": True, "data": {"stepVersionId": record.id, **prompt.to_dict()}}
