"""
Step invocation interface
The engine dispatches nodes through a StepInvoker; inference lives behind it
"""

from typing import Any, Dict, Protocol, Union

import structlog

from src.pipelines.models import InvocationRequest, StepInvocationResult

logger = structlog.get_logger(__name__)


class StepInvoker(Protocol):
    """External collaborator that runs one attempt of a resolved step"""

    async def invoke(self, request: InvocationRequest) -> Union[StepInvocationResult, Dict[str, Any]]:
        ...


class NoopStepInvoker:
    """
    Invoker used when no model backend is wired in.

    Reports success with empty metrics so plans can be exercised end to end.
    """

    async def invoke(self, request: InvocationRequest) -> StepInvocationResult:
        logger.debug(
            "noop_step_invoked",
            node_key=request.node_key,
            step_version_id=request.step_version_id,
            prompt_source=request.prompt_source
        )
        return StepInvocationResult(success=True, metrics={}, output=None)
