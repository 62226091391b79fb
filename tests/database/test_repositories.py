"""
Integration tests for the SQLAlchemy repositories.
"""

import pytest

from src.database import (
    FlowRepository, PipelineRepository, RunRepository, SqlVersionCatalog, StepRepository
)
from src.database.repositories import dag_step_references
from src.orchestration import PipelineEngine
from src.pipelines.exceptions import BindingConflict, DuplicateRecord, RecordNotFound
from src.versioning import PromptSource, VersionResolver


@pytest.fixture
def pipelines(db_session):
    return PipelineRepository(db_session)


@pytest.fixture
def steps(db_session):
    return StepRepository(db_session)


@pytest.fixture
def flows(db_session):
    return FlowRepository(db_session)


@pytest.fixture
async def seeded(pipelines, steps):
    """Two steps with one active version each and a pipeline using both"""
    extract = await steps.create_step("extract", "Extract")
    render = await steps.create_step("render", "Render")
    extract_v1 = await steps.create_version(extract.id, "v1", prompt="extract it", is_active=True)
    render_v1 = await steps.create_version(render.id, "v1", prompt="render it", is_active=True)

    pipeline = await pipelines.create_pipeline("landing-page")
    dag = {
        "nodes": [
            {"key": "extract", "stepVersionId": extract_v1.id},
            {"key": "render", "stepId": render.id, "dependsOn": ["extract"]},
        ]
    }
    version = await pipelines.create_version(pipeline.id, "v1", dag, is_active=True)
    return {
        "extract": extract,
        "render": render,
        "extract_v1": extract_v1,
        "render_v1": render_v1,
        "pipeline": pipeline,
        "version": version,
    }


@pytest.mark.unit
class TestDagReferences:

    def test_collects_pins_and_bare_steps(self):
        refs = dag_step_references({"nodes": [
            {"key": "a", "stepVersionId": "sv-1", "stepId": "ignored"},
            {"key": "b", "stepId": "step-2"},
            "junk",
        ]})
        assert refs == {"stepVersionIds": {"sv-1"}, "stepIds": {"step-2"}}

    def test_keyed_map_and_garbage(self):
        assert dag_step_references({"nodes": {"a": {"stepId": "s"}}})["stepIds"] == {"s"}
        assert dag_step_references(None) == {"stepVersionIds": set(), "stepIds": set()}


@pytest.mark.integration
@pytest.mark.database
class TestPipelineVersions:

    async def test_activation_leaves_exactly_one_active(self, pipelines):
        pipeline = await pipelines.create_pipeline("p")
        v1 = await pipelines.create_version(pipeline.id, "v1", {"nodes": []}, is_active=True)
        v2 = await pipelines.create_version(pipeline.id, "v2", {"nodes": []})

        await pipelines.activate_version(pipeline.id, "v2")

        versions = await pipelines.list_versions(pipeline.id)
        active = [v.id for v in versions if v.is_active]
        assert active == [v2.id]
        assert (await pipelines.get_active_version(pipeline.id)).id == v2.id
        assert v1.id != v2.id

    async def test_creating_active_version_replaces_active(self, pipelines):
        pipeline = await pipelines.create_pipeline("p")
        await pipelines.create_version(pipeline.id, "v1", {"nodes": []}, is_active=True)
        v2 = await pipelines.create_version(pipeline.id, "v2", {"nodes": []}, is_active=True)

        versions = await pipelines.list_versions(pipeline.id)
        assert [v.id for v in versions if v.is_active] == [v2.id]

    async def test_lookup_by_label_or_id(self, pipelines):
        pipeline = await pipelines.create_pipeline("p")
        v1 = await pipelines.create_version(pipeline.id, "v1", {"nodes": []})

        assert (await pipelines.get_version(pipeline.id, "v1")).id == v1.id
        assert (await pipelines.get_version(pipeline.id, v1.id)).version == "v1"
        with pytest.raises(RecordNotFound):
            await pipelines.get_version(pipeline.id, "v9")

    async def test_duplicates_rejected(self, pipelines):
        pipeline = await pipelines.create_pipeline("p")
        await pipelines.create_version(pipeline.id, "v1", {"nodes": []})

        with pytest.raises(DuplicateRecord):
            await pipelines.create_version(pipeline.id, "v1", {"nodes": []})
        with pytest.raises(DuplicateRecord):
            await pipelines.create_pipeline("p")

    async def test_replace_dag(self, pipelines):
        pipeline = await pipelines.create_pipeline("p")
        await pipelines.create_version(pipeline.id, "v1", {"nodes": []})

        record = await pipelines.replace_dag(pipeline.id, "v1", {"nodes": [{"key": "a", "stepId": "s"}]})

        assert record.dag["nodes"][0]["key"] == "a"

    async def test_missing_pipeline(self, pipelines):
        with pytest.raises(RecordNotFound):
            await pipelines.list_versions("nope")


@pytest.mark.integration
@pytest.mark.database
class TestStepVersions:

    async def test_step_activation(self, steps):
        step = await steps.create_step("extract", "Extract")
        v1 = await steps.create_version(step.id, "v1", is_active=True)
        v2 = await steps.create_version(step.id, "v2")

        await steps.activate_version(step.id, v2.id)

        records = await steps.get_versions({v1.id, v2.id})
        assert {r.id: r.is_active for r in records} == {v1.id: False, v2.id: True}

    async def test_unknown_prompt_asset_rejected(self, steps):
        step = await steps.create_step("extract", "Extract")

        with pytest.raises(RecordNotFound):
            await steps.create_version(step.id, "v1", production_prompt_id="missing")

    async def test_prompt_slots(self, steps):
        step = await steps.create_step("extract", "Extract")
        version = await steps.create_version(step.id, "v1", prompt="inline")
        asset = await steps.create_prompt_asset("extract-prod", {"system": "be precise"})

        await steps.set_prompt(version.id, "production", asset.id)
        assert (await steps.get_version_by_id(version.id)).production_prompt_id == asset.id

        await steps.set_prompt(version.id, "production", None)
        assert (await steps.get_version_by_id(version.id)).production_prompt_id is None

        with pytest.raises(ValueError):
            await steps.set_prompt(version.id, "staging", asset.id)


@pytest.mark.integration
@pytest.mark.database
class TestFlows:

    async def test_pin_must_belong_to_pipeline(self, flows, pipelines, seeded):
        other = await pipelines.create_pipeline("other")
        other_v1 = await pipelines.create_version(other.id, "v1", {"nodes": []})
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)

        with pytest.raises(BindingConflict) as exc_info:
            await flows.bind_pipeline(flow.id, seeded["pipeline"].id, other_v1.id)

        assert exc_info.value.code == "pinned_version_pipeline_mismatch"

    async def test_pin_infers_pipeline(self, flows, seeded):
        flow = await flows.create_flow("home", "Home")

        flow = await flows.bind_pipeline(flow.id, pinned_pipeline_version_id=seeded["version"].id)

        assert flow.pipeline_id == seeded["pipeline"].id

    async def test_nothing_to_update(self, flows, seeded):
        flow = await flows.create_flow("home", "Home")

        with pytest.raises(BindingConflict) as exc_info:
            await flows.bind_pipeline(flow.id)

        assert exc_info.value.code == "nothing_to_update"

    async def test_unpin_keeps_pipeline(self, flows, seeded):
        flow = await flows.create_flow(
            "home", "Home",
            pipeline_id=seeded["pipeline"].id,
            pinned_pipeline_version_id=seeded["version"].id
        )

        flow = await flows.unpin(flow.id)

        assert flow.pinned_pipeline_version_id is None
        assert flow.pipeline_id == seeded["pipeline"].id

    async def test_rebinding_clears_foreign_pin(self, flows, pipelines, seeded):
        other = await pipelines.create_pipeline("other")
        flow = await flows.create_flow("home", "Home", pinned_pipeline_version_id=seeded["version"].id)

        flow = await flows.bind_pipeline(flow.id, pipeline_id=other.id)

        assert flow.pipeline_id == other.id
        assert flow.pinned_pipeline_version_id is None

    async def test_allowed_steps(self, flows, seeded):
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)

        allowed = await flows.allowed_steps(flow.id)

        assert allowed["pipelineBound"] is True
        assert allowed["activePipelineVersion"] == seeded["version"].id
        assert {s["key"] for s in allowed["allowedSteps"]} == {"extract", "render"}

    async def test_allowed_steps_unbound(self, flows):
        flow = await flows.create_flow("home", "Home")

        allowed = await flows.allowed_steps(flow.id)

        assert allowed == {"allowedSteps": [], "pipelineBound": False, "activePipelineVersion": None}

    async def test_phase_step_must_be_in_pipeline(self, flows, steps, seeded):
        stranger = await steps.create_step("stranger", "Stranger")
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)
        phase = await flows.add_phase(flow.id, "build")

        with pytest.raises(BindingConflict) as exc_info:
            await flows.add_phase_step(phase.id, stranger.id)

        assert exc_info.value.code == "step_not_in_bound_pipeline"

    async def test_phase_step_pin_mismatch(self, flows, seeded):
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)
        phase = await flows.add_phase(flow.id, "build")

        with pytest.raises(BindingConflict) as exc_info:
            await flows.add_phase_step(phase.id, seeded["extract"].id, pinned_step_version_id=seeded["render_v1"].id)

        assert exc_info.value.code == "pinned_step_version_mismatch_step"

    async def test_phase_step_pin_outside_pipeline(self, flows, steps, seeded):
        extract_v2 = await steps.create_version(seeded["extract"].id, "v2")
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)
        phase = await flows.add_phase(flow.id, "build")

        with pytest.raises(BindingConflict) as exc_info:
            await flows.add_phase_step(phase.id, seeded["extract"].id, pinned_step_version_id=extract_v2.id)

        assert exc_info.value.code == "pinned_step_version_not_in_pipeline"

    async def test_phases_and_steps_are_ordered(self, flows, seeded):
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)
        first = await flows.add_phase(flow.id, "build")
        second = await flows.add_phase(flow.id, "ship")
        s1 = await flows.add_phase_step(first.id, seeded["extract"].id, pinned_step_version_id=seeded["extract_v1"].id)
        s2 = await flows.add_phase_step(first.id, seeded["render"].id, params={"theme": "dark"})

        assert (first.order_index, second.order_index) == (0, 1)
        assert (s1.order_index, s2.order_index) == (0, 1)
        assert s2.params == {"theme": "dark"}

    async def test_unbound_flow_accepts_any_step(self, flows, steps):
        step = await steps.create_step("free", "Free")
        flow = await flows.create_flow("home", "Home")
        phase = await flows.add_phase(flow.id, "build")

        phase_step = await flows.add_phase_step(phase.id, step.id)

        assert phase_step.step_id == step.id

    async def test_phase_step_resolution(self, db_session, flows, steps, seeded):
        flow = await flows.create_flow("home", "Home", pipeline_id=seeded["pipeline"].id)
        phase = await flows.add_phase(flow.id, "build")
        phase_step = await flows.add_phase_step(phase.id, seeded["render"].id)
        render_v2 = await steps.create_version(seeded["render"].id, "v2", is_active=True)

        resolver = VersionResolver(SqlVersionCatalog(db_session))
        resolved = await resolver.resolve_phase_step(phase_step.to_record())

        assert resolved.id == render_v2.id


@pytest.mark.integration
@pytest.mark.database
class TestCatalogAndRuns:

    async def test_sql_catalog_resolves_prompts(self, db_session, steps, seeded):
        asset = await steps.create_prompt_asset("prod", {"system": "prod"})
        await steps.set_prompt(seeded["extract_v1"].id, "production", asset.id)
        catalog = SqlVersionCatalog(db_session)

        record = await catalog.get_step_version(seeded["extract_v1"].id)
        prompt = await VersionResolver(catalog).resolve_prompt(record)

        assert prompt.source == PromptSource.PRODUCTION
        assert prompt.prompt_content == {"system": "prod"}
        assert (await catalog.get_active_step_version(seeded["render"].id)).id == seeded["render_v1"].id
        assert (await catalog.get_active_pipeline_version(seeded["pipeline"].id)).id == seeded["version"].id
        assert await catalog.get_pipeline_version("missing") is None

    async def test_run_is_persisted_with_steps(self, db_session, seeded, invoker):
        runs = RunRepository(db_session)
        engine = PipelineEngine(SqlVersionCatalog(db_session), runs, invoker=invoker, max_parallelism=2)

        result = await engine.plan_and_execute(seeded["version"].id, origin="test")

        run = await runs.get_run(result["pipelineRunId"])
        assert run["status"] == "succeeded"
        assert run["origin"] == "test"
        assert [step["nodeKey"] for step in run["steps"]] == ["extract", "render"]
        assert all(step["status"] == "succeeded" for step in run["steps"])
        assert run["steps"][1]["stepVersionId"] == seeded["render_v1"].id
        assert run["summary"]["plannedNodes"] == ["extract", "render"]
        assert run["completedAt"] is not None

    async def test_dry_run_persists_planned_run(self, db_session, seeded, invoker):
        runs = RunRepository(db_session)
        engine = PipelineEngine(SqlVersionCatalog(db_session), runs, invoker=invoker)

        result = await engine.plan_and_execute(seeded["version"].id, dry_run=True)

        run = await runs.get_run(result["pipelineRunId"])
        assert run["status"] == "planned"
        assert run["steps"] == []
        assert invoker.calls == []

    async def test_missing_run(self, db_session):
        with pytest.raises(RecordNotFound):
            await RunRepository(db_session).get_run("missing")
