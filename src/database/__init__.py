from .connection import engine, build_engine, get_db_session, create_tables, check_database_connection
from .models import (
    Base, PipelineDefinition, PipelineVersion, StepDefinition, StepVersion, PromptAsset,
    ProjectFlow, DomainPhase, DomainPhaseStep, PipelineRun, StepRun
)
from .repositories import (
    PipelineRepository, StepRepository, FlowRepository, RunRepository, SqlVersionCatalog
)

__all__ = [
    "engine",
    "build_engine",
    "get_db_session",
    "create_tables",
    "check_database_connection",
    "Base",
    "PipelineDefinition",
    "PipelineVersion",
    "StepDefinition",
    "StepVersion",
    "PromptAsset",
    "ProjectFlow",
    "DomainPhase",
    "DomainPhaseStep",
    "PipelineRun",
    "StepRun",
    "PipelineRepository",
    "StepRepository",
    "FlowRepository",
    "RunRepository",
    "SqlVersionCatalog"
]
