from fastapi import APIRouter, Depends

from src.database import RunRepository
from .dependencies import get_run_repository

runs_router = APIRouter(prefix="/runs", tags=["runs"])


@runs_router.get("/{run_id}")
async def get_run(run_id: str, repo: RunRepository = Depends(get_run_repository)):
    """Run record with its step runs"""
    return {"success": True, "data": await repo.get_run(run_id)}
