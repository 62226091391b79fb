"""
FastAPI dependencies wiring sessions into repositories and the engine
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.database import (
    FlowRepository, PipelineRepository, RunRepository, SqlVersionCatalog, StepRepository, get_db_session
)
from src.orchestration import NoopStepInvoker, PipelineEngine, StepInvoker
from src.versioning import VersionResolver


def get_step_invoker(request: Request) -> StepInvoker:
    """The invoker installed on app.state, or the no-op invoker"""
    return getattr(request.app.state, "step_invoker", None) or NoopStepInvoker()


def get_pipeline_repository(session: AsyncSession = Depends(get_db_session)) -> PipelineRepository:
    return PipelineRepository(session)


def get_step_repository(session: AsyncSession = Depends(get_db_session)) -> StepRepository:
    return StepRepository(session)


def get_flow_repository(session: AsyncSession = Depends(get_db_session)) -> FlowRepository:
    return FlowRepository(session)


def get_run_repository(session: AsyncSession = Depends(get_db_session)) -> RunRepository:
    return RunRepository(session)


def get_version_resolver(session: AsyncSession = Depends(get_db_session)) -> VersionResolver:
    return VersionResolver(SqlVersionCatalog(session))


def get_pipeline_engine(
    session: AsyncSession = Depends(get_db_session),
    invoker: StepInvoker = Depends(get_step_invoker)
) -> PipelineEngine:
    return PipelineEngine(
        catalog=SqlVersionCatalog(session),
        run_store=RunRepository(session),
        invoker=invoker,
        max_parallelism=settings.ENGINE_MAX_PARALLELISM,
        default_timeout_ms=settings.DEFAULT_NODE_TIMEOUT_MS,
        retry_backoff_ms=settings.RETRY_BACKOFF_MS,
        require_prompt=settings.REQUIRE_PROMPT_SOURCE
    )
