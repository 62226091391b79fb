"""
Exception handlers mapping engine errors onto HTTP responses
"""

import logging
import re

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.pipelines.exceptions import BindingConflict, DuplicateRecord, NodeScopedError, RecordNotFound
from src.planner.exceptions import GraphError

logger = logging.getLogger(__name__)


def _error_code(entity: str, suffix: str) -> str:
    """`PipelineVersion` -> `pipeline_version_<suffix>`"""
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", entity).lower()
    return f"{snake}_{suffix}"


async def node_scoped_error_handler(request: Request, exc: NodeScopedError) -> JSONResponse:
    """Graph and resolution errors: the request was understood but the DAG cannot run"""
    body = {"success": False, **exc.to_dict()}
    if not isinstance(exc, GraphError):
        body.setdefault("issues", [])
    logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=422, content=body)


async def not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"success": False, "error": _error_code(exc.entity, "not_found"), "message": exc.message}
    )


async def binding_conflict_handler(request: Request, exc: BindingConflict) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": exc.code, "message": exc.message})


async def duplicate_record_handler(request: Request, exc: DuplicateRecord) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": _error_code(exc.entity, "conflict"), "message": exc.message}
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NodeScopedError, node_scoped_error_handler)
    app.add_exception_handler(RecordNotFound, not_found_handler)
    app.add_exception_handler(BindingConflict, binding_conflict_handler)
    app.add_exception_handler(DuplicateRecord, duplicate_record_handler)
