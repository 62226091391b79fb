"""
Topological Planner
Deterministic Kahn-style planning of a NormalizedGraph into dispatch batches
"""

from typing import Dict, List, Tuple

import structlog

from .exceptions import CycleDetected
from .models import ExecutionPlan, NormalizedGraph

logger = structlog.get_logger(__name__)


def plan_graph(graph: NormalizedGraph) -> ExecutionPlan:
    """
    Compute the execution plan of a validated graph.

    Eligible nodes (in-degree zero) are ranked by `(order, key)`. The best
    ranked node is dispatched next; when it carries a `parallelGroup`, every
    eligible node of the same group joins its batch. The flat `plan` is the
    concatenation of batches.

    Args:
        graph: Normalized graph from the validator

    Returns:
        ExecutionPlan with flat plan and ordered batches

    Raises:
        CycleDetected: If nodes remain with nonzero in-degree
    """
    in_degree: Dict[str, int] = {key: len(graph.dependencies[key]) for key in graph.keys}
    eligible: List[str] = [key for key in graph.keys if in_degree[key] == 0]

    def rank(key: str) -> Tuple[float, str]:
        order = graph.nodes[key].order
        return (order if order is not None else 0, key)

    batches: List[Tuple[str, ...]] = []
    while eligible:
        eligible.sort(key=rank)
        head = eligible[0]
        group = graph.nodes[head].parallel_group

        if group:
            batch = [key for key in eligible if graph.nodes[key].parallel_group == group]
        else:
            batch = [head]

        batches.append(tuple(batch))
        dispatched = set(batch)
        eligible = [key for key in eligible if key not in dispatched]

        for key in batch:
            for child in graph.dependents[key]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    eligible.append(child)

    plan = tuple(key for batch in batches for key in batch)

    if len(plan) != len(graph.keys):
        unresolved = [key for key in graph.keys if in_degree[key] > 0]
        logger.error("planning_cycle_detected", unresolved=unresolved)
        raise CycleDetected(
            f"Cycle detected: unresolved nodes {', '.join(unresolved)}",
            node_keys=unresolved
        )

    logger.debug(
        "execution_plan_created",
        node_count=len(plan),
        batch_count=len(batches)
    )
    return ExecutionPlan(plan=plan, batches=tuple(batches))
