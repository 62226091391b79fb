"""
Test configuration and fixtures for the pipeline orchestrator.
"""

import pytest
import asyncio
from typing import AsyncGenerator, Any, Callable, Dict, List, Optional, Union

# Database imports
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Application imports
from src.database.models import Base
from src.pipelines.models import InvocationRequest, StepInvocationResult
from src.versioning import (
    InMemoryVersionCatalog, PipelineVersionRecord, PromptAssetRecord, StepVersionRecord
)
from config.settings import Settings


Behavior = Union[StepInvocationResult, Dict[str, Any], BaseException, Callable[[InvocationRequest], Any]]


class ScriptedInvoker:
    """
    Step invoker whose behavior is scripted per node key.

    Each node key maps to a list of behaviors consumed one per attempt (the
    last one repeats). A behavior is a result, a dict, an exception to raise,
    or an async callable. Unscripted nodes succeed with empty metrics.
    """

    def __init__(self, script: Optional[Dict[str, List[Behavior]]] = None, delay: float = 0.0):
        self.script = script or {}
        self.delay = delay
        self.calls: List[InvocationRequest] = []
        self.running = 0
        self.max_running = 0

    def attempts(self, node_key: str) -> int:
        return sum(1 for call in self.calls if call.node_key == node_key)

    @property
    def dispatched(self) -> List[str]:
        seen: List[str] = []
        for call in self.calls:
            if call.node_key not in seen:
                seen.append(call.node_key)
        return seen

    async def invoke(self, request: InvocationRequest):
        self.calls.append(request)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)

            behaviors = self.script.get(request.node_key)
            if not behaviors:
                return StepInvocationResult(success=True)

            behavior = behaviors[min(request.attempt, len(behaviors)) - 1]
            if isinstance(behavior, BaseException):
                raise behavior
            if callable(behavior):
                return await behavior(request)
            return behavior
        finally:
            self.running -= 1


@pytest.fixture
def test_settings():
    """Create test settings."""
    return Settings(
        DEBUG=True,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENGINE_MAX_PARALLELISM=2,
        RETRY_BACKOFF_MS=0
    )


@pytest.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def invoker():
    return ScriptedInvoker()


@pytest.fixture
def catalog():
    """
    In-memory catalog with one step per letter a-e.

    Step version `sv-<x>` belongs to step `step-<x>` and is active; `sv-a`
    additionally has an inactive sibling `sv-a-old`.
    """
    step_versions = [
        StepVersionRecord(id=f"sv-{x}", step_id=f"step-{x}", version="v1", is_active=True, prompt=f"inline {x}")
        for x in "abcde"
    ]
    step_versions.append(StepVersionRecord(id="sv-a-old", step_id="step-a", version="v0", is_active=False))
    return InMemoryVersionCatalog(
        step_versions=step_versions,
        prompt_assets=[PromptAssetRecord(id="asset-prod", name="prod", prompt_content={"text": "production"})]
    )


@pytest.fixture
def add_pipeline_version(catalog):
    """Register a DAG as pipeline version `pv-<n>` of pipeline `pipe-1`"""
    counter = {"n": 0}

    def _add(dag: Dict[str, Any], is_active: bool = True) -> PipelineVersionRecord:
        counter["n"] += 1
        record = PipelineVersionRecord(
            id=f"pv-{counter['n']}",
            pipeline_id="pipe-1",
            version=f"v{counter['n']}",
            dag=dag,
            is_active=is_active
        )
        return catalog.add_pipeline_version(record)

    return _add


def node(key: str, *depends_on: str, **fields) -> Dict[str, Any]:
    """Raw camelCase DAG node referencing step version `sv-<first letter>`"""
    data = {"key": key, "stepVersionId": fields.pop("stepVersionId", f"sv-{key[0]}"), "dependsOn": list(depends_on)}
    data.update(fields)
    return data


@pytest.fixture
def make_node():
    return node


@pytest.fixture
def scripted():
    """Factory for ScriptedInvoker"""
    return ScriptedInvoker
