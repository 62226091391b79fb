"""
Request bodies for the admin API
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.pipelines.models import PipelineDag


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _dag_shape(v: Dict[str, Any]) -> Dict[str, Any]:
    """Only the outer `{nodes, edges?}` shape is checked on write"""
    PipelineDag.model_validate(v)
    return v


class PipelineCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class PipelineVersionCreate(CamelModel):
    version: str = Field(..., min_length=1, description="Version label, unique per pipeline")
    dag: Dict[str, Any] = Field(default_factory=lambda: {"nodes": []})
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = Field(default=False, alias="isActive")

    @field_validator('dag')
    @classmethod
    def check_dag_shape(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _dag_shape(v)


class DagReplace(CamelModel):
    dag: Dict[str, Any]

    @field_validator('dag')
    @classmethod
    def check_dag_shape(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _dag_shape(v)


class ExecuteRequest(CamelModel):
    dry_run: bool = Field(default=False, alias="dryRun")
    origin: Optional[str] = None
    origin_info: Optional[Dict[str, Any]] = Field(default=None, alias="originInfo")


class StepCreate(CamelModel):
    key: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class StepVersionCreate(CamelModel):
    version: str = Field(..., min_length=1)
    default_config: Dict[str, Any] = Field(default_factory=dict, alias="defaultConfig")
    prompt: Optional[str] = Field(default=None, description="Legacy inline prompt")
    production_prompt_id: Optional[str] = Field(default=None, alias="productionPromptId")
    default_prompt_id: Optional[str] = Field(default=None, alias="defaultPromptId")
    is_active: bool = Field(default=False, alias="isActive")


class PromptAssetCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    prompt_content: Any = Field(..., alias="promptContent")
    ir_schema: Any = Field(default=None, alias="irSchema")


class PromptBinding(CamelModel):
    """`null` clears the slot"""
    prompt_asset_id: Optional[str] = Field(default=None, alias="promptAssetId")


class FlowCreate(CamelModel):
    key: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    pinned_pipeline_version_id: Optional[str] = Field(default=None, alias="pinnedPipelineVersionId")


class FlowPipelineBinding(CamelModel):
    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    pinned_pipeline_version_id: Optional[str] = Field(default=None, alias="pinnedPipelineVersionId")


class PhaseCreate(CamelModel):
    name: str = Field(..., min_length=1)
    order_index: Optional[int] = Field(default=None, ge=0, alias="orderIndex")


class PhaseStepCreate(CamelModel):
    step_id: str = Field(..., min_length=1, alias="stepId")
    pinned_step_version_id: Optional[str] = Field(default=None, alias="pinnedStepVersionId")
    params: Dict[str, Any] = Field(default_factory=dict)
