from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
)
from datetime import datetime, timezone
import uuid

from src.versioning.models import (
    FlowRecord, PhaseStepRecord, PipelineVersionRecord, PromptAssetRecord, StepVersionRecord
)

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class PipelineDefinition(Base):
    """A named pipeline; owns its versions."""
    __tablename__ = "pipeline_definitions"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": _iso(self.created_at),
        }


class PipelineVersion(Base):
    """
    Immutable-by-label version of a pipeline DAG.

    At most one version per pipeline has `is_active` set; activation flips
    the flags inside a single transaction.
    """
    __tablename__ = "pipeline_versions"
    __table_args__ = (UniqueConstraint("pipeline_id", "version", name="uq_pipeline_version_label"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_id = Column(String(36), ForeignKey("pipeline_definitions.id"), index=True, nullable=False)
    version = Column(String(64), nullable=False)

    # Persisted in camelCase: {nodes, edges?}
    dag = Column(JSON, nullable=False, default=lambda: {"nodes": []})
    config = Column(JSON, nullable=False, default=lambda: {})
    is_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_record(self) -> PipelineVersionRecord:
        return PipelineVersionRecord(
            id=self.id,
            pipeline_id=self.pipeline_id,
            version=self.version,
            dag=self.dag or {},
            is_active=bool(self.is_active),
            created_at=self.created_at
        )

    def to_dict(self):
        return {
            "id": self.id,
            "pipelineId": self.pipeline_id,
            "version": self.version,
            "dag": self.dag,
            "config": self.config,
            "isActive": bool(self.is_active),
            "createdAt": _iso(self.created_at),
        }


class StepDefinition(Base):
    """A reusable AI step, independent of any version."""
    __tablename__ = "step_definitions"

    id = Column(String(36), primary_key=True, default=_uuid)
    key = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
        }


class PromptAsset(Base):
    __tablename__ = "prompt_assets"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    prompt_content = Column(JSON, nullable=False)
    ir_schema = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_record(self) -> PromptAssetRecord:
        return PromptAssetRecord(
            id=self.id,
            name=self.name,
            prompt_content=self.prompt_content,
            ir_schema=self.ir_schema
        )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "promptContent": self.prompt_content,
            "irSchema": self.ir_schema,
            "createdAt": _iso(self.created_at),
        }


class StepVersion(Base):
    """Versioned configuration of a step, with its prompt bindings."""
    __tablename__ = "step_versions"
    __table_args__ = (UniqueConstraint("step_id", "version", name="uq_step_version_label"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    step_id = Column(String(36), ForeignKey("step_definitions.id"), index=True, nullable=False)
    version = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    default_config = Column(JSON, nullable=False, default=lambda: {})

    production_prompt_id = Column(String(36), ForeignKey("prompt_assets.id"), nullable=True)
    default_prompt_id = Column(String(36), ForeignKey("prompt_assets.id"), nullable=True)
    prompt = Column(Text)  # legacy inline prompt

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_record(self) -> StepVersionRecord:
        return StepVersionRecord(
            id=self.id,
            step_id=self.step_id,
            version=self.version,
            is_active=bool(self.is_active),
            production_prompt_id=self.production_prompt_id,
            default_prompt_id=self.default_prompt_id,
            prompt=self.prompt,
            default_config=self.default_config or {}
        )

    def to_dict(self):
        return {
            "id": self.id,
            "stepId": self.step_id,
            "version": self.version,
            "isActive": bool(self.is_active),
            "defaultConfig": self.default_config,
            "productionPromptId": self.production_prompt_id,
            "defaultPromptId": self.default_prompt_id,
            "prompt": self.prompt,
            "createdAt": _iso(self.created_at),
        }


class ProjectFlow(Base):
    """
    A project flow bound to a pipeline.

    With `pinned_pipeline_version_id` set the flow always runs that version;
    otherwise it follows the pipeline's active version.
    """
    __tablename__ = "project_flows"

    id = Column(String(36), primary_key=True, default=_uuid)
    key = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    pipeline_id = Column(String(36), ForeignKey("pipeline_definitions.id"), nullable=True)
    pinned_pipeline_version_id = Column(String(36), ForeignKey("pipeline_versions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_record(self) -> FlowRecord:
        return FlowRecord(
            id=self.id,
            pipeline_id=self.pipeline_id,
            pinned_pipeline_version_id=self.pinned_pipeline_version_id,
            key=self.key
        )

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "pipelineId": self.pipeline_id,
            "pinnedPipelineVersionId": self.pinned_pipeline_version_id,
        }


class DomainPhase(Base):
    __tablename__ = "domain_phases"

    id = Column(String(36), primary_key=True, default=_uuid)
    flow_id = Column(String(36), ForeignKey("project_flows.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "flowId": self.flow_id,
            "name": self.name,
            "orderIndex": self.order_index,
        }


class DomainPhaseStep(Base):
    __tablename__ = "domain_phase_steps"

    id = Column(String(36), primary_key=True, default=_uuid)
    phase_id = Column(String(36), ForeignKey("domain_phases.id"), index=True, nullable=False)
    step_id = Column(String(36), ForeignKey("step_definitions.id"), nullable=False)
    pinned_step_version_id = Column(String(36), ForeignKey("step_versions.id"), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    params = Column(JSON, nullable=False, default=lambda: {})

    def to_record(self) -> PhaseStepRecord:
        return PhaseStepRecord(
            id=self.id,
            step_id=self.step_id,
            pinned_step_version_id=self.pinned_step_version_id,
            params=self.params or {}
        )

    def to_dict(self):
        return {
            "id": self.id,
            "phaseId": self.phase_id,
            "stepId": self.step_id,
            "pinnedStepVersionId": self.pinned_step_version_id,
            "orderIndex": self.order_index,
            "params": self.params,
        }


class PipelineRun(Base):
    """
    One planned or executed run of a pipeline version.

    `summary` holds the planned node order, batches and run diagnostics;
    `metrics` maps node key to the metrics that node produced.
    """
    __tablename__ = "pipeline_runs"

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_version_id = Column(String(36), ForeignKey("pipeline_versions.id"), index=True, nullable=False)
    status = Column(String(32), nullable=False, index=True)

    origin = Column(String(64))
    origin_info = Column(JSON)
    summary = Column(JSON, nullable=False, default=lambda: {})
    metrics = Column(JSON, nullable=False, default=lambda: {})

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<PipelineRun(id={self.id}, status={self.status}, version={self.pipeline_version_id})>"

    def to_dict(self):
        return {
            "id": self.id,
            "pipelineVersionId": self.pipeline_version_id,
            "status": self.status,
            "origin": self.origin,
            "originInfo": self.origin_info,
            "summary": self.summary,
            "metrics": self.metrics,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }


class StepRun(Base):
    __tablename__ = "step_runs"
    __table_args__ = (UniqueConstraint("pipeline_run_id", "node_key", name="uq_step_run_node"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_run_id = Column(String(36), ForeignKey("pipeline_runs.id"), index=True, nullable=False)
    node_key = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # index in the planned order
    step_version_id = Column(String(36), nullable=False)

    status = Column(String(32), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    prompt_source = Column(String(32))
    params = Column(JSON, nullable=False, default=lambda: {})
    metrics = Column(JSON)

    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    # Wall-clock time between running and completion
    duration_ms = Column(Float)

    def to_dict(self):
        return {
            "id": self.id,
            "nodeKey": self.node_key,
            "stepVersionId": self.step_version_id,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "promptSource": self.prompt_source,
            "params": self.params,
            "metrics": self.metrics,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "durationMs": self.duration_ms,
        }
