"""
Unit tests for the execution coordinator
"""

import asyncio
import time

import pytest

from src.orchestration import ExecutionCoordinator, RunOutcome
from src.pipelines.models import NodeStatus, RunStatus, StepInvocationResult
from src.planner import load_graph, plan_graph
from src.versioning import VersionResolver


class RecordingObserver:
    """Collects every transition and the final outcome"""

    def __init__(self):
        self.transitions = []
        self.metrics = {}
        self.outcome = None

    async def node_status_changed(self, run_id, state, metrics=None):
        self.transitions.append((state.key, state.status))
        if metrics is not None:
            self.metrics[state.key] = metrics

    async def run_finished(self, run_id, outcome):
        self.outcome = outcome

    def statuses(self, key):
        return [status for node_key, status in self.transitions if node_key == key]


@pytest.fixture
def prepare(catalog):
    async def _prepare(payload):
        graph = load_graph(payload)
        plan = plan_graph(graph)
        resolved = await VersionResolver(catalog).resolve_graph(graph)
        return graph, plan, resolved

    return _prepare


@pytest.fixture
def observer():
    return RecordingObserver()


def ok(**metrics):
    return StepInvocationResult(success=True, metrics=metrics)


def diamond(make_node, **d_fields):
    return {
        "nodes": [
            make_node("a"),
            make_node("b", "a"),
            make_node("c", "a"),
            make_node("d", "b", "c", **d_fields),
        ]
    }


@pytest.mark.unit
class TestSuccessfulRuns:

    async def test_diamond_succeeds_in_plan_order(self, prepare, make_node, scripted, observer):
        """Every node runs once, in batch order, and metrics land under node keys"""
        invoker = scripted({"a": [ok(rows=10)], "b": [ok(passed=True)]})
        coordinator = ExecutionCoordinator(invoker, observer=observer)

        outcome = await coordinator.execute(*await prepare(diamond(make_node)), run_id="run-1")

        assert isinstance(outcome, RunOutcome)
        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.run_id == "run-1"
        assert invoker.dispatched == ["a", "b", "c", "d"]
        assert outcome.metrics["a"] == {"rows": 10}
        assert outcome.metrics["b"] == {"passed": True}
        assert all(state.status == NodeStatus.SUCCEEDED for state in outcome.nodes.values())
        assert observer.outcome is not None
        assert observer.statuses("a") == [NodeStatus.RUNNING, NodeStatus.SUCCEEDED]

    async def test_invocation_request_carries_resolution(self, prepare, make_node, scripted):
        invoker = scripted()
        payload = {"nodes": [make_node("a", params={"depth": 2})]}

        await ExecutionCoordinator(invoker).execute(*await prepare(payload))

        request = invoker.calls[0]
        assert request.step_version_id == "sv-a"
        assert request.prompt_source == "inline"
        assert request.prompt_content == "inline a"
        assert request.params == {"depth": 2}
        assert request.attempt == 1

    async def test_dict_results_are_accepted(self, prepare, make_node, scripted):
        invoker = scripted({"a": [{"success": True, "metrics": {"x": 1}, "output": "html"}]})

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare({"nodes": [make_node("a")]}))

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.metrics["a"] == {"x": 1}
        assert outcome.outputs["a"] == "html"

    async def test_generated_run_id(self, prepare, make_node, scripted):
        outcome = await ExecutionCoordinator(scripted()).execute(*await prepare({"nodes": [make_node("a")]}))
        assert outcome.run_id


@pytest.mark.unit
class TestConditionGating:

    async def test_false_condition_skips_and_run_succeeds(self, prepare, make_node, scripted, observer):
        """d is skipped (not failed) when b reports passed=false"""
        invoker = scripted({"b": [ok(passed=False)]})
        payload = diamond(make_node, condition="metrics.b.passed == true")

        outcome = await ExecutionCoordinator(invoker, observer=observer).execute(*await prepare(payload))

        assert outcome.nodes["d"].status == NodeStatus.SKIPPED
        assert outcome.status == RunStatus.SUCCEEDED
        assert "d" not in invoker.dispatched
        assert observer.statuses("d") == [NodeStatus.SKIPPED]

    async def test_true_condition_runs(self, prepare, make_node, scripted):
        invoker = scripted({"b": [ok(passed=True)]})
        payload = diamond(make_node, condition="metrics.b.passed == true")

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare(payload))

        assert outcome.nodes["d"].status == NodeStatus.SUCCEEDED

    async def test_malformed_condition_skips_with_diagnostic(self, prepare, make_node, scripted):
        payload = {"nodes": [make_node("a"), make_node("b", "a", condition="metrics.a.ok ==")]}

        outcome = await ExecutionCoordinator(scripted()).execute(*await prepare(payload))

        assert outcome.nodes["b"].status == NodeStatus.SKIPPED
        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.diagnostics[0]["nodeKey"] == "b"
        assert outcome.diagnostics[0]["code"] == "ConditionError"

    async def test_deeply_nested_condition_skips_without_halting(self, prepare, make_node, scripted):
        deep = "(" * 400 + "true" + ")" * 400
        payload = {"nodes": [make_node("a"), make_node("b", "a", condition=deep), make_node("c", "b")]}

        outcome = await ExecutionCoordinator(scripted()).execute(*await prepare(payload))

        assert outcome.nodes["b"].status == NodeStatus.SKIPPED
        assert outcome.nodes["c"].status == NodeStatus.SUCCEEDED
        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.diagnostics[0]["nodeKey"] == "b"
        assert "nested too deeply" in outcome.diagnostics[0]["message"]

    async def test_digit_led_node_key_in_condition(self, prepare, make_node, scripted):
        invoker = scripted({"1st": [ok(ok=True)]})
        payload = {
            "nodes": [
                make_node("1st", stepVersionId="sv-a"),
                make_node("b", "1st", condition="metrics.1st.ok == true"),
            ]
        }

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare(payload))

        assert outcome.nodes["b"].status == NodeStatus.SUCCEEDED

    async def test_dependents_of_skipped_node_still_run(self, prepare, make_node, scripted):
        payload = {"nodes": [make_node("a", condition="false"), make_node("b", "a")]}

        outcome = await ExecutionCoordinator(scripted()).execute(*await prepare(payload))

        assert outcome.nodes["a"].status == NodeStatus.SKIPPED
        assert outcome.nodes["b"].status == NodeStatus.SUCCEEDED

    async def test_batch_members_do_not_see_each_other(self, prepare, make_node, scripted):
        """Conditions read the metrics snapshot taken when the batch started"""
        invoker = scripted({"b": [ok(passed=True)]})
        payload = {
            "nodes": [
                make_node("b", parallelGroup="g"),
                make_node("c", parallelGroup="g", condition="metrics.b.passed == true"),
                make_node("d", "b", condition="metrics.b.passed == true"),
            ]
        }

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare(payload))

        assert outcome.nodes["c"].status == NodeStatus.SKIPPED
        assert outcome.nodes["d"].status == NodeStatus.SUCCEEDED


@pytest.mark.unit
class TestRetriesAndTimeouts:

    async def test_always_timing_out_fails_after_three_attempts(self, prepare, make_node, scripted):
        """retries=2 means exactly three attempts, each cut off at the deadline"""
        async def hang(request):
            await asyncio.sleep(10)

        invoker = scripted({"a": [hang]})
        payload = {"nodes": [make_node("a", retries=2, timeoutMs=50)]}

        started = time.monotonic()
        outcome = await ExecutionCoordinator(invoker).execute(*await prepare(payload))
        elapsed = time.monotonic() - started

        assert outcome.nodes["a"].status == NodeStatus.FAILED
        assert outcome.nodes["a"].attempts == 3
        assert invoker.attempts("a") == 3
        assert "timeout of 50ms" in outcome.nodes["a"].error
        assert elapsed < 2
        assert outcome.status == RunStatus.FAILED

    async def test_default_timeout_applies(self, prepare, make_node, scripted):
        async def hang(request):
            await asyncio.sleep(10)

        coordinator = ExecutionCoordinator(scripted({"a": [hang]}), default_timeout_ms=30)

        outcome = await coordinator.execute(*await prepare({"nodes": [make_node("a")]}))

        assert outcome.nodes["a"].status == NodeStatus.FAILED

    async def test_retry_then_success(self, prepare, make_node, scripted):
        invoker = scripted({"a": [RuntimeError("flaky"), StepInvocationResult(success=False), ok(done=True)]})
        payload = {"nodes": [make_node("a", retries=2)]}

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare(payload))

        assert outcome.nodes["a"].status == NodeStatus.SUCCEEDED
        assert outcome.nodes["a"].attempts == 3
        assert [call.attempt for call in invoker.calls] == [1, 2, 3]
        assert outcome.metrics["a"] == {"done": True}

    async def test_exception_without_retries_fails(self, prepare, make_node, scripted):
        invoker = scripted({"a": [ValueError("boom")]})

        outcome = await ExecutionCoordinator(invoker).execute(*await prepare({"nodes": [make_node("a")]}))

        assert outcome.nodes["a"].status == NodeStatus.FAILED
        assert "ValueError: boom" in outcome.nodes["a"].error

    async def test_final_failed_attempt_metrics_recorded(self, prepare, make_node, scripted):
        invoker = scripted({"a": [StepInvocationResult(success=False, metrics={"score": 0.1})]})

        outcome = await ExecutionCoordinator(invoker).execute(
            *await prepare({"nodes": [make_node("a", continueOnFail=True)]})
        )

        assert outcome.metrics["a"] == {"score": 0.1}


@pytest.mark.unit
class TestFailurePolicy:

    async def test_halting_failure_stops_later_batches(self, prepare, make_node, scripted, observer):
        invoker = scripted({"a": [ValueError("boom")]})

        outcome = await ExecutionCoordinator(invoker, observer=observer).execute(*await prepare(diamond(make_node)))

        assert outcome.status == RunStatus.FAILED
        assert outcome.halted_by == "a"
        assert invoker.dispatched == ["a"]
        assert outcome.nodes["a"].status == NodeStatus.FAILED
        assert {outcome.nodes[k].status for k in "bcd"} == {NodeStatus.PENDING}
        assert observer.outcome.status == RunStatus.FAILED

    async def test_continue_on_fail_lets_dependents_run(self, prepare, make_node, scripted, observer):
        invoker = scripted({"b": [ValueError("boom")]})
        payload = {
            "nodes": [
                make_node("a"),
                make_node("b", "a", continueOnFail=True),
                make_node("c", "a"),
                make_node("d", "b", "c"),
            ]
        }

        outcome = await ExecutionCoordinator(invoker, observer=observer).execute(*await prepare(payload))

        assert outcome.nodes["b"].status == NodeStatus.FAILED_CONTINUED
        assert outcome.nodes["d"].status == NodeStatus.SUCCEEDED
        assert outcome.status == RunStatus.COMPLETED_WITH_FAILURES
        assert observer.statuses("b") == [NodeStatus.RUNNING, NodeStatus.FAILED, NodeStatus.FAILED_CONTINUED]

    async def test_running_batch_members_finish_after_halt(self, prepare, make_node, scripted):
        """A halt never interrupts nodes already dispatched in the same batch"""
        async def fail_late(request):
            await asyncio.sleep(0.01)
            raise ValueError("boom")

        async def slow(request):
            await asyncio.sleep(0.05)
            return ok(slow=True)

        invoker = scripted({"a": [fail_late], "b": [slow]})
        payload = {"nodes": [make_node("a", parallelGroup="g"), make_node("b", parallelGroup="g"), make_node("c", "b")]}

        outcome = await ExecutionCoordinator(invoker, max_parallelism=2).execute(*await prepare(payload))

        assert outcome.nodes["a"].status == NodeStatus.FAILED
        assert outcome.nodes["b"].status == NodeStatus.SUCCEEDED
        assert outcome.nodes["c"].status == NodeStatus.PENDING
        assert outcome.status == RunStatus.FAILED

    async def test_members_waiting_for_a_slot_stay_pending(self, prepare, make_node, scripted):
        invoker = scripted({"a": [ValueError("boom")]})
        payload = {"nodes": [make_node("a", parallelGroup="g"), make_node("b", parallelGroup="g")]}

        outcome = await ExecutionCoordinator(invoker, max_parallelism=1).execute(*await prepare(payload))

        assert invoker.dispatched == ["a"]
        assert outcome.nodes["b"].status == NodeStatus.PENDING
        assert outcome.nodes["b"].attempts == 0


@pytest.mark.unit
class TestParallelism:

    async def test_batch_concurrency_is_bounded(self, prepare, make_node, scripted):
        invoker = scripted(delay=0.02)
        payload = {"nodes": [make_node(k, parallelGroup="g") for k in "abcde"]}

        outcome = await ExecutionCoordinator(invoker, max_parallelism=2).execute(*await prepare(payload))

        assert outcome.status == RunStatus.SUCCEEDED
        assert invoker.max_running == 2
        assert sorted(invoker.dispatched) == list("abcde")

    async def test_batches_never_overlap(self, prepare, make_node, scripted):
        invoker = scripted(delay=0.01)
        payload = {"nodes": [make_node("a", parallelGroup="g"), make_node("b", parallelGroup="g"), make_node("c", "a")]}

        await ExecutionCoordinator(invoker, max_parallelism=4).execute(*await prepare(payload))

        assert invoker.max_running == 2
        assert invoker.dispatched[-1] == "c"

    def test_invalid_parallelism_rejected(self, scripted):
        with pytest.raises(ValueError):
            ExecutionCoordinator(scripted(), max_parallelism=0)
