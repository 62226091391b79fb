"""
Version resolution exceptions
"""

from typing import Optional, Sequence

from src.pipelines.exceptions import NodeScopedError


class ResolutionError(NodeScopedError):
    """Base exception for version/prompt resolution failures, raised before dispatch"""
    code = "ResolutionError"


class UnresolvedStepVersion(ResolutionError):
    """Exception raised when neither a pin nor an active step version exists"""
    code = "UnresolvedStepVersion"


class NoActivePromptSource(ResolutionError):
    """Exception raised when a prompt is required but no source is present"""
    code = "NoActivePromptSource"


class UnboundFlow(ResolutionError):
    """Exception raised when a flow has no pinned nor active pipeline version"""

    code = "UnboundFlow"

    def __init__(self, message: str, flow_id: Optional[str] = None, node_keys: Optional[Sequence[str]] = None):
        super().__init__(message, node_keys=node_keys)
        self.flow_id = flow_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["flowId"] = self.flow_id
        return payload
