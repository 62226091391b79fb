"""
Version resolution for step versions, prompts and flow pipeline bindings
"""

from .resolver import VersionResolver, ref_for_node, ref_for_phase_step, ref_for_flow
from .catalog import VersionCatalog, InMemoryVersionCatalog
from .models import (
    Pinned, FollowActive, VersionRef, PromptSource, ResolvedPrompt, ResolvedNode,
    StepVersionRecord, PromptAssetRecord, PipelineVersionRecord, FlowRecord, PhaseStepRecord
)
from .exceptions import ResolutionError, UnresolvedStepVersion, UnboundFlow, NoActivePromptSource

__all__ = [
    "VersionResolver",
    "ref_for_node",
    "ref_for_phase_step",
    "ref_for_flow",
    "VersionCatalog",
    "InMemoryVersionCatalog",
    "Pinned",
    "FollowActive",
    "VersionRef",
    "PromptSource",
    "ResolvedPrompt",
    "ResolvedNode",
    "StepVersionRecord",
    "PromptAssetRecord",
    "PipelineVersionRecord",
    "FlowRecord",
    "PhaseStepRecord",
    "ResolutionError",
    "UnresolvedStepVersion",
    "UnboundFlow",
    "NoActivePromptSource"
]
