"""
Version Resolver
Resolves effective step versions, prompts and pipeline versions by fixed precedence
"""

from typing import Dict, List, Optional

import structlog

from src.pipelines.models import DagNode
from src.planner.models import NormalizedGraph
from .catalog import VersionCatalog
from .exceptions import NoActivePromptSource, ResolutionError, UnboundFlow, UnresolvedStepVersion
from .models import (
    FlowRecord, FollowActive, PhaseStepRecord, PipelineVersionRecord, Pinned,
    PromptSource, ResolvedNode, ResolvedPrompt, StepVersionRecord, VersionRef
)

logger = structlog.get_logger(__name__)


def ref_for_node(node: DagNode) -> VersionRef:
    """A node naming a concrete step version is pinned; one naming only a step follows it"""
    if node.step_version_id:
        return Pinned(node.step_version_id)
    if node.step_id:
        return FollowActive(node.step_id)
    raise UnresolvedStepVersion(
        f"Node '{node.key}' names neither a step version nor a step",
        node_keys=[node.key]
    )


def ref_for_phase_step(phase_step: PhaseStepRecord) -> VersionRef:
    if phase_step.pinned_step_version_id:
        return Pinned(phase_step.pinned_step_version_id)
    return FollowActive(phase_step.step_id)


def ref_for_flow(flow: FlowRecord) -> VersionRef:
    if flow.pinned_pipeline_version_id:
        return Pinned(flow.pinned_pipeline_version_id)
    if flow.pipeline_id:
        return FollowActive(flow.pipeline_id)
    raise UnboundFlow(f"Flow '{flow.key or flow.id}' is not bound to a pipeline", flow_id=flow.id)


class VersionResolver:
    """
    Resolves what each node actually runs with.

    Step version: the pin when present, else the step's active version.
    Prompt: production asset, then default asset, then the legacy inline
    prompt, then none; the first present source wins and is never merged.
    Pipeline version for a flow: the pin, else the pipeline's active version.
    """

    def __init__(self, catalog: VersionCatalog):
        self.catalog = catalog

    async def resolve_step_version(self, ref: VersionRef, node_key: Optional[str] = None) -> StepVersionRecord:
        node_keys = [node_key] if node_key else []

        if isinstance(ref, Pinned):
            record = await self.catalog.get_step_version(ref.version_id)
            if record is None:
                raise UnresolvedStepVersion(
                    f"Pinned step version '{ref.version_id}' does not exist",
                    node_keys=node_keys
                )
            return record

        if isinstance(ref, FollowActive):
            record = await self.catalog.get_active_step_version(ref.owner_id)
            if record is None:
                raise UnresolvedStepVersion(
                    f"Step '{ref.owner_id}' has no active version",
                    node_keys=node_keys
                )
            return record

        raise TypeError(f"Unsupported version reference: {ref!r}")

    async def resolve_prompt(self, step_version: StepVersionRecord) -> ResolvedPrompt:
        """Resolve the effective prompt of a step version"""
        candidates = (
            (PromptSource.PRODUCTION, step_version.production_prompt_id),
            (PromptSource.DEFAULT, step_version.default_prompt_id),
        )
        for source, asset_id in candidates:
            if not asset_id:
                continue
            asset = await self.catalog.get_prompt_asset(asset_id)
            if asset is None:
                logger.warning(
                    "prompt_asset_missing",
                    step_version_id=step_version.id,
                    prompt_source=source.value,
                    asset_id=asset_id
                )
                continue
            return ResolvedPrompt(
                source=source,
                asset_id=asset.id,
                prompt_content=asset.prompt_content,
                ir_schema=asset.ir_schema
            )

        if step_version.prompt:
            return ResolvedPrompt(source=PromptSource.INLINE, prompt_content=step_version.prompt)

        return ResolvedPrompt(source=PromptSource.NONE)

    async def resolve_pipeline_version(self, flow: FlowRecord) -> PipelineVersionRecord:
        """
        Resolve the pipeline version a flow executes.

        Raises:
            UnboundFlow: If the flow has no pipeline, its pin is missing, or the
                pipeline has no active version
        """
        ref = ref_for_flow(flow)

        if isinstance(ref, Pinned):
            record = await self.catalog.get_pipeline_version(ref.version_id)
            if record is None:
                raise UnboundFlow(
                    f"Pinned pipeline version '{ref.version_id}' of flow '{flow.key or flow.id}' does not exist",
                    flow_id=flow.id
                )
            return record

        record = await self.catalog.get_active_pipeline_version(ref.owner_id)
        if record is None:
            raise UnboundFlow(
                f"Pipeline '{ref.owner_id}' of flow '{flow.key or flow.id}' has no active version",
                flow_id=flow.id
            )
        return record

    async def resolve_phase_step(self, phase_step: PhaseStepRecord) -> StepVersionRecord:
        return await self.resolve_step_version(ref_for_phase_step(phase_step))

    async def resolve_node(self, node: DagNode, require_prompt: bool = False) -> ResolvedNode:
        ref = ref_for_node(node)
        step_version = await self.resolve_step_version(ref, node_key=node.key)
        prompt = await self.resolve_prompt(step_version)

        if require_prompt and prompt.source == PromptSource.NONE:
            raise NoActivePromptSource(
                f"Step version '{step_version.id}' of node '{node.key}' has no prompt source",
                node_keys=[node.key]
            )

        return ResolvedNode(key=node.key, ref=ref, step_version=step_version, prompt=prompt)

    async def resolve_graph(
        self,
        graph: NormalizedGraph,
        require_prompt: bool = False,
        pipeline_version_id: Optional[str] = None
    ) -> Dict[str, ResolvedNode]:
        """
        Resolve every node of a graph before any dispatch.

        All failing nodes are collected and reported in one ResolutionError of
        the type of the first failure.
        """
        resolved: Dict[str, ResolvedNode] = {}
        failures: List[ResolutionError] = []

        for key in graph.keys:
            try:
                resolved[key] = await self.resolve_node(graph.node(key), require_prompt=require_prompt)
            except ResolutionError as e:
                failures.append(e)

        if failures:
            first = failures[0]
            node_keys = [key for failure in failures for key in failure.node_keys]
            logger.warning(
                "graph_resolution_failed",
                pipeline_version_id=pipeline_version_id,
                node_keys=node_keys
            )
            message = first.message
            if len(failures) > 1:
                message = f"{message} (+{len(failures) - 1} more unresolved node(s))"
            raise type(first)(message, node_keys=node_keys, pipeline_version_id=pipeline_version_id)

        logger.debug(
            "graph_resolved",
            pipeline_version_id=pipeline_version_id,
            node_count=len(resolved)
        )
        return resolved
