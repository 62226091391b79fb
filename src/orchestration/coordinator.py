"""
Execution Coordinator
Walks plan batches, gates nodes on conditions and applies retry/timeout policy
"""

import asyncio
import copy
import time
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4

import structlog

from src.conditions import ConditionError, evaluate_condition
from src.pipelines.exceptions import StepTimeoutError
from src.pipelines.models import (
    DagNode, InvocationRequest, NodeState, NodeStatus, StepInvocationResult
)
from src.planner.models import ExecutionPlan, NormalizedGraph
from src.versioning.models import ResolvedNode
from .invocation import StepInvoker
from .run_state import NullRunObserver, RunObserver, RunOutcome, RunState

logger = structlog.get_logger(__name__)


class ExecutionCoordinator:
    """
    Executes a plan batch by batch.

    Features:
    - Strict batch ordering; members of one batch run concurrently
    - Bounded worker pool across the batch (max_parallelism)
    - Condition gating against metrics finalized by earlier batches
    - Per-attempt timeout and retries, continue-on-fail policy
    - Halting never interrupts nodes that are already running
    """

    def __init__(
        self,
        invoker: StepInvoker,
        observer: Optional[RunObserver] = None,
        max_parallelism: int = 4,
        default_timeout_ms: Optional[int] = None,
        retry_backoff_ms: int = 0
    ):
        """
        Initialize execution coordinator

        Args:
            invoker: External step invocation collaborator
            observer: Receives node transitions and the final outcome
            max_parallelism: Max concurrently running nodes within a batch
            default_timeout_ms: Deadline for nodes without `timeoutMs`
            retry_backoff_ms: Pause between failed attempts of a node
        """
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")

        self.invoker = invoker
        self.observer = observer or NullRunObserver()
        self.max_parallelism = max_parallelism
        self.default_timeout_ms = default_timeout_ms
        self.retry_backoff_ms = retry_backoff_ms

        logger.debug(
            "execution_coordinator_initialized",
            max_parallelism=max_parallelism,
            default_timeout_ms=default_timeout_ms
        )

    async def execute(
        self,
        graph: NormalizedGraph,
        plan: ExecutionPlan,
        resolved: Mapping[str, ResolvedNode],
        run_id: Optional[str] = None
    ) -> RunOutcome:
        """
        Execute every batch of a plan in order

        Args:
            graph: Validated graph the plan was computed from
            plan: Execution plan with ordered batches
            resolved: Resolved step version and prompt per node key
            run_id: Identifier of the run record, generated when omitted

        Returns:
            RunOutcome with per-node states, metrics and aggregate status
        """
        run_id = run_id or uuid4().hex
        state = RunState(run_id=run_id, nodes={key: NodeState(key=key) for key in graph.keys})
        semaphore = asyncio.Semaphore(self.max_parallelism)
        start_time = time.time()

        logger.info(
            "run_execution_started",
            run_id=run_id,
            node_count=len(graph.keys),
            batch_count=len(plan.batches)
        )

        for index, batch in enumerate(plan.batches):
            if state.halted:
                logger.info(
                    "run_halted_remaining_batches_skipped",
                    run_id=run_id,
                    halted_by=state.halted_by,
                    remaining_batches=len(plan.batches) - index
                )
                break

            # Members of one batch only see metrics finalized before it started
            namespace = {"metrics": copy.deepcopy(state.metrics)}

            logger.debug("batch_dispatched", run_id=run_id, batch_index=index, nodes=list(batch))

            results = await asyncio.gather(
                *(
                    self._run_node(state, graph.node(key), resolved[key], namespace, semaphore)
                    for key in batch
                ),
                return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

        outcome = state.outcome()
        await self.observer.run_finished(run_id, outcome)

        logger.info(
            "run_execution_completed",
            run_id=run_id,
            status=outcome.status.value,
            halted_by=outcome.halted_by,
            execution_time_ms=(time.time() - start_time) * 1000
        )
        return outcome

    async def _run_node(
        self,
        state: RunState,
        node: DagNode,
        resolved: ResolvedNode,
        namespace: Dict[str, Any],
        semaphore: asyncio.Semaphore
    ) -> None:
        """Gate, dispatch and settle a single node"""
        key = node.key

        if state.halted:
            return

        try:
            should_run = evaluate_condition(node.condition, namespace)
        except ConditionError as e:
            state.add_diagnostic(key, "ConditionError", str(e))
            logger.warning("node_condition_invalid", run_id=state.run_id, node_key=key, error=str(e))
            await self._transition(state, key, NodeStatus.SKIPPED, error=str(e))
            return

        if not should_run:
            logger.info("node_skipped_by_condition", run_id=state.run_id, node_key=key, condition=node.condition)
            await self._transition(state, key, NodeStatus.SKIPPED)
            return

        async with semaphore:
            # A halt while waiting for a slot means this node was never dispatched
            if state.halted:
                logger.info("node_dispatch_withheld", run_id=state.run_id, node_key=key, halted_by=state.halted_by)
                return

            state.nodes[key].prompt_source = resolved.prompt.source.value
            await self._transition(state, key, NodeStatus.RUNNING)

            result, error = await self._attempt(state, node, resolved)
            succeeded = result is not None and result.success

            # Claimed before the slot is released so waiting members see the halt
            if not succeeded and not node.continue_on_fail and not state.halted:
                state.halted_by = key

        if result is not None:
            state.record_metrics(key, result.metrics)
            state.outputs[key] = result.output

        if succeeded:
            await self._transition(state, key, NodeStatus.SUCCEEDED, metrics=result.metrics)
            return

        metrics = result.metrics if result is not None else None
        await self._transition(state, key, NodeStatus.FAILED, error=error, metrics=metrics)

        if node.continue_on_fail:
            await self._transition(state, key, NodeStatus.FAILED_CONTINUED)
            logger.warning("node_failed_continued", run_id=state.run_id, node_key=key, error=error)
        else:
            logger.error("node_failed_run_halted", run_id=state.run_id, node_key=key, error=error)

    async def _attempt(
        self,
        state: RunState,
        node: DagNode,
        resolved: ResolvedNode
    ) -> Tuple[Optional[StepInvocationResult], Optional[str]]:
        """Run up to `retries + 1` attempts; return the last result and error"""
        max_attempts = node.retries + 1
        timeout_ms = node.timeout_ms or self.default_timeout_ms
        result: Optional[StepInvocationResult] = None
        error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            state.nodes[node.key].attempts = attempt
            request = InvocationRequest(
                run_id=state.run_id,
                node_key=node.key,
                step_version_id=resolved.step_version.id,
                prompt_source=resolved.prompt.source.value,
                prompt_content=resolved.prompt.prompt_content,
                params=dict(node.params),
                attempt=attempt
            )

            try:
                result = await self._invoke(request, timeout_ms)
            except StepTimeoutError as e:
                result, error = None, str(e)
            except Exception as e:
                result, error = None, f"{type(e).__name__}: {e}"
            else:
                if result.success:
                    return result, None
                error = "Step invocation reported failure"

            logger.warning(
                "node_attempt_failed",
                run_id=state.run_id,
                node_key=node.key,
                attempt=attempt,
                max_attempts=max_attempts,
                error=error
            )

            if attempt < max_attempts and self.retry_backoff_ms:
                await asyncio.sleep(self.retry_backoff_ms / 1000)

        return result, error

    async def _invoke(self, request: InvocationRequest, timeout_ms: Optional[int]) -> StepInvocationResult:
        call = self.invoker.invoke(request)
        if timeout_ms:
            try:
                raw = await asyncio.wait_for(call, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise StepTimeoutError(request.node_key, timeout_ms, attempt=request.attempt)
        else:
            raw = await call

        if isinstance(raw, StepInvocationResult):
            return raw
        return StepInvocationResult.model_validate(raw)

    async def _transition(
        self,
        state: RunState,
        key: str,
        status: NodeStatus,
        error: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None
    ) -> None:
        node_state = state.transition(key, status, error=error)
        await self.observer.node_status_changed(state.run_id, node_state.model_copy(), metrics)
