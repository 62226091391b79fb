"""
Version resolution models
Catalog records, the pin-vs-follow-active reference type and resolved nodes
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Pinned:
    """Reference fixed to one explicit version id"""
    version_id: str


@dataclass(frozen=True)
class FollowActive:
    """Reference following whatever version of `owner_id` is currently active"""
    owner_id: str


VersionRef = Union[Pinned, FollowActive]


class PromptSource(str, Enum):
    """Where an effective prompt came from, in precedence order"""
    PRODUCTION = "production"
    DEFAULT = "default"
    INLINE = "inline"
    NONE = "none"


@dataclass(frozen=True)
class StepVersionRecord:
    id: str
    step_id: str
    version: str = ""
    is_active: bool = False
    production_prompt_id: Optional[str] = None
    default_prompt_id: Optional[str] = None
    prompt: Optional[str] = None
    default_config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptAssetRecord:
    id: str
    name: str = ""
    prompt_content: Any = None
    ir_schema: Any = None


@dataclass(frozen=True)
class PipelineVersionRecord:
    id: str
    pipeline_id: str
    version: str = ""
    dag: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class FlowRecord:
    id: str
    pipeline_id: Optional[str] = None
    pinned_pipeline_version_id: Optional[str] = None
    key: str = ""


@dataclass(frozen=True)
class PhaseStepRecord:
    id: str
    step_id: str
    pinned_step_version_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedPrompt:
    source: PromptSource
    asset_id: Optional[str] = None
    prompt_content: Any = None
    ir_schema: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "assetId": self.asset_id,
            "promptContent": self.prompt_content,
            "irSchema": self.ir_schema,
        }


@dataclass(frozen=True)
class ResolvedNode:
    """A DAG node bound to the concrete step version and prompt it runs with"""
    key: str
    ref: VersionRef
    step_version: StepVersionRecord
    prompt: ResolvedPrompt

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "stepVersionId": self.step_version.id,
            "pinned": isinstance(self.ref, Pinned),
            "prompt": self.prompt.to_dict(),
        }
