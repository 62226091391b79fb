"""
Pipeline engine custom exceptions
"""

from typing import List, Optional, Sequence


class PipelineEngineError(Exception):
    """Base exception for all pipeline engine errors"""

    def __init__(
        self,
        message: str,
        pipeline_version_id: Optional[str] = None,
        run_id: Optional[str] = None
    ):
        super().__init__(message)
        self.pipeline_version_id = pipeline_version_id
        self.run_id = run_id
        self.message = message

    def __str__(self) -> str:
        context = []
        if self.pipeline_version_id:
            context.append(f"pipeline_version_id={self.pipeline_version_id}")
        if self.run_id:
            context.append(f"run_id={self.run_id}")

        context_str = f" ({', '.join(context)})" if context else ""
        return f"{self.message}{context_str}"


class NodeScopedError(PipelineEngineError):
    """Error that names the offending DAG node keys"""

    code = "PipelineEngineError"

    def __init__(
        self,
        message: str,
        node_keys: Optional[Sequence[str]] = None,
        pipeline_version_id: Optional[str] = None,
        run_id: Optional[str] = None
    ):
        super().__init__(message, pipeline_version_id, run_id)
        self.node_keys: List[str] = list(node_keys or [])

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "nodeKeys": self.node_keys,
        }


class ExecutionError(PipelineEngineError):
    """Exception raised when a node invocation attempt fails"""

    def __init__(
        self,
        message: str,
        node_key: Optional[str] = None,
        attempt: Optional[int] = None,
        run_id: Optional[str] = None
    ):
        super().__init__(message, run_id=run_id)
        self.node_key = node_key
        self.attempt = attempt

    def __str__(self) -> str:
        base_str = super().__str__()
        node_info = f" (node_key={self.node_key})" if self.node_key else ""
        return f"Execution failed{node_info}: {base_str}"


class StepTimeoutError(ExecutionError):
    """Exception raised when a node attempt exceeds its deadline"""

    def __init__(self, node_key: str, timeout_ms: int, attempt: Optional[int] = None):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Attempt exceeded timeout of {timeout_ms}ms",
            node_key=node_key,
            attempt=attempt
        )


class RecordNotFound(PipelineEngineError):
    """Exception raised when a referenced pipeline, step, flow or run does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class DuplicateRecord(PipelineEngineError):
    """Exception raised when a unique key or version label is already taken"""

    def __init__(self, entity: str, value: str):
        super().__init__(f"{entity} '{value}' already exists")
        self.entity = entity
        self.value = value


class BindingConflict(PipelineEngineError):
    """Exception raised when a flow or phase-step binding is inconsistent"""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code.replace("_", " "))
        self.code = code
