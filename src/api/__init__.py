"""
Admin HTTP API
"""

from fastapi import APIRouter

from .errors import register_exception_handlers
from .flows import flows_router
from .pipelines import pipelines_router
from .runs import runs_router
from .steps import steps_router

admin_router = APIRouter(prefix="/api/admin")
admin_router.include_router(pipelines_router)
admin_router.include_router(steps_router)
admin_router.include_router(flows_router)
admin_router.include_router(runs_router)

__all__ = [
    "admin_router",
    "register_exception_handlers"
]
