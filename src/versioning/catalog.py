"""
Version catalog interface
Read-only lookups the resolver needs, plus an in-memory implementation
"""

from dataclasses import replace
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from .models import FlowRecord, PipelineVersionRecord, PromptAssetRecord, StepVersionRecord


@runtime_checkable
class VersionCatalog(Protocol):
    """Lookups backing the Version Resolver"""

    async def get_step_version(self, step_version_id: str) -> Optional[StepVersionRecord]:
        ...

    async def get_active_step_version(self, step_id: str) -> Optional[StepVersionRecord]:
        ...

    async def get_prompt_asset(self, asset_id: str) -> Optional[PromptAssetRecord]:
        ...

    async def get_pipeline_version(self, pipeline_version_id: str) -> Optional[PipelineVersionRecord]:
        ...

    async def get_active_pipeline_version(self, pipeline_id: str) -> Optional[PipelineVersionRecord]:
        ...

    async def get_flow(self, flow_id: str) -> Optional[FlowRecord]:
        ...


class InMemoryVersionCatalog:
    """
    Dictionary-backed catalog.

    Activation keeps the single-active-version rule per step and per
    pipeline.
    """

    def __init__(
        self,
        step_versions: Iterable[StepVersionRecord] = (),
        prompt_assets: Iterable[PromptAssetRecord] = (),
        pipeline_versions: Iterable[PipelineVersionRecord] = (),
        flows: Iterable[FlowRecord] = ()
    ):
        self.step_versions: Dict[str, StepVersionRecord] = {}
        self.prompt_assets: Dict[str, PromptAssetRecord] = {a.id: a for a in prompt_assets}
        self.pipeline_versions: Dict[str, PipelineVersionRecord] = {}
        self.flows: Dict[str, FlowRecord] = {f.id: f for f in flows}

        for sv in step_versions:
            self.add_step_version(sv)
        for pv in pipeline_versions:
            self.add_pipeline_version(pv)

    def add_step_version(self, record: StepVersionRecord) -> StepVersionRecord:
        self.step_versions[record.id] = record
        if record.is_active:
            self.activate_step_version(record.id)
        return self.step_versions[record.id]

    def add_prompt_asset(self, record: PromptAssetRecord) -> PromptAssetRecord:
        self.prompt_assets[record.id] = record
        return record

    def add_pipeline_version(self, record: PipelineVersionRecord) -> PipelineVersionRecord:
        self.pipeline_versions[record.id] = record
        if record.is_active:
            self.activate_pipeline_version(record.id)
        return self.pipeline_versions[record.id]

    def activate_step_version(self, step_version_id: str) -> StepVersionRecord:
        target = self.step_versions[step_version_id]
        for sv_id, sv in list(self.step_versions.items()):
            if sv.step_id == target.step_id:
                self.step_versions[sv_id] = replace(sv, is_active=(sv_id == step_version_id))
        return self.step_versions[step_version_id]

    def activate_pipeline_version(self, pipeline_version_id: str) -> PipelineVersionRecord:
        target = self.pipeline_versions[pipeline_version_id]
        for pv_id, pv in list(self.pipeline_versions.items()):
            if pv.pipeline_id == target.pipeline_id:
                self.pipeline_versions[pv_id] = replace(pv, is_active=(pv_id == pipeline_version_id))
        return self.pipeline_versions[pipeline_version_id]

    async def get_step_version(self, step_version_id: str) -> Optional[StepVersionRecord]:
        return self.step_versions.get(step_version_id)

    async def get_active_step_version(self, step_id: str) -> Optional[StepVersionRecord]:
        for sv in self.step_versions.values():
            if sv.step_id == step_id and sv.is_active:
                return sv
        return None

    async def get_prompt_asset(self, asset_id: str) -> Optional[PromptAssetRecord]:
        return self.prompt_assets.get(asset_id)

    async def get_pipeline_version(self, pipeline_version_id: str) -> Optional[PipelineVersionRecord]:
        return self.pipeline_versions.get(pipeline_version_id)

    async def get_active_pipeline_version(self, pipeline_id: str) -> Optional[PipelineVersionRecord]:
        for pv in self.pipeline_versions.values():
            if pv.pipeline_id == pipeline_id and pv.is_active:
                return pv
        return None

    def add_flow(self, record: FlowRecord) -> FlowRecord:
        self.flows[record.id] = record
        return record

    async def get_flow(self, flow_id: str) -> Optional[FlowRecord]:
        return self.flows.get(flow_id)
