"""
DAG Normalizer & Validator
Parses raw pipeline-version DAG payloads into the canonical NormalizedGraph
"""

from typing import AbstractSet, Any, Dict, List, Optional, Tuple

import networkx as nx
import structlog
from pydantic import ValidationError

from src.pipelines.models import DagEdge, DagNode, PipelineDag
from .models import GraphIssue, NormalizedGraph, ValidationResult

logger = structlog.get_logger(__name__)


def validate_dag(
    payload: Any,
    known_step_version_ids: Optional[AbstractSet[str]] = None
) -> ValidationResult:
    """
    Normalize and validate a raw DAG payload.

    Accepts `nodes` as an array or as a map keyed by node key, and optional
    `edges`. Every edge `(from, to)` is merged into `to.dependsOn`. The result
    carries either a NormalizedGraph or every issue found, never a partial graph.

    Args:
        payload: `{nodes, edges?}` dict or PipelineDag
        known_step_version_ids: When given, nodes naming a step version outside
            this set are reported as UnresolvedStep

    Returns:
        ValidationResult with the graph or the issues
    """
    issues: List[GraphIssue] = []

    if isinstance(payload, PipelineDag):
        payload = payload.model_dump(by_alias=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        issues.append(GraphIssue("InvalidNode", "DAG payload must be an object with a 'nodes' field"))
        return ValidationResult(errors=issues)

    raw_nodes = _collect_raw_nodes(payload.get("nodes"), issues)

    nodes: Dict[str, DagNode] = {}
    for index, raw in raw_nodes:
        label = raw.get("key") if isinstance(raw.get("key"), str) and raw.get("key") else f"#{index}"
        try:
            node = DagNode.model_validate(raw)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(part) for part in err["loc"]) or "node" for err in e.errors()
            )
            issues.append(GraphIssue(
                "InvalidNode",
                f"Node '{label}' is malformed: invalid {fields}",
                (label,) if not label.startswith("#") else ()
            ))
            continue

        if node.key in nodes:
            issues.append(GraphIssue("DuplicateKey", f"Duplicate node key: {node.key}", (node.key,)))
            continue
        nodes[node.key] = node

    for node in nodes.values():
        if not node.step_version_id and not node.step_id:
            issues.append(GraphIssue(
                "UnresolvedStep",
                f"Node '{node.key}' does not reference a step version or step",
                (node.key,)
            ))
        elif (
            known_step_version_ids is not None
            and node.step_version_id
            and node.step_version_id not in known_step_version_ids
        ):
            issues.append(GraphIssue(
                "UnresolvedStep",
                f"Node '{node.key}' references unknown step version '{node.step_version_id}'",
                (node.key,)
            ))

    dependencies = _reconcile_dependencies(nodes, payload.get("edges"), issues)
    issues.extend(_find_cycles(list(nodes), dependencies))

    if issues:
        logger.info(
            "dag_validation_failed",
            issue_count=len(issues),
            codes=sorted({issue.code for issue in issues})
        )
        return ValidationResult(errors=issues)

    keys = tuple(nodes)
    dependents: Dict[str, List[str]] = {key: [] for key in keys}
    for key in keys:
        for dep in dependencies[key]:
            dependents[dep].append(key)

    graph = NormalizedGraph(
        nodes=nodes,
        keys=keys,
        dependencies={key: tuple(deps) for key, deps in dependencies.items()},
        dependents={key: tuple(deps) for key, deps in dependents.items()}
    )

    logger.debug("dag_validated", node_count=len(keys))
    return ValidationResult(graph=graph)


def load_graph(
    payload: Any,
    known_step_version_ids: Optional[AbstractSet[str]] = None,
    pipeline_version_id: Optional[str] = None
) -> NormalizedGraph:
    """Validate a payload and raise the matching GraphError on any issue"""
    result = validate_dag(payload, known_step_version_ids)
    return result.raise_for_errors(pipeline_version_id=pipeline_version_id)


def _collect_raw_nodes(raw_nodes: Any, issues: List[GraphIssue]) -> List[Tuple[int, Dict[str, Any]]]:
    """Flatten the array-or-map node notation into (index, node dict) pairs"""
    collected: List[Tuple[int, Dict[str, Any]]] = []

    if raw_nodes is None:
        return collected

    if isinstance(raw_nodes, dict):
        for index, (map_key, raw) in enumerate(raw_nodes.items()):
            if not isinstance(raw, dict):
                issues.append(GraphIssue("InvalidNode", f"Node '{map_key}' must be an object", (str(map_key),)))
                continue
            own_key = raw.get("key")
            if own_key is not None and own_key != map_key:
                issues.append(GraphIssue(
                    "InvalidNode",
                    f"Node key '{own_key}' does not match its map key '{map_key}'",
                    (str(map_key),)
                ))
                continue
            collected.append((index, {**raw, "key": map_key}))
        return collected

    if isinstance(raw_nodes, list):
        for index, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict):
                issues.append(GraphIssue("InvalidNode", f"Node #{index} must be an object"))
                continue
            collected.append((index, raw))
        return collected

    issues.append(GraphIssue("InvalidNode", "'nodes' must be an array or a keyed map"))
    return collected


def _reconcile_dependencies(
    nodes: Dict[str, DagNode],
    raw_edges: Any,
    issues: List[GraphIssue]
) -> Dict[str, List[str]]:
    """Union of declared dependsOn and incoming edges, order-preserving"""
    dependencies: Dict[str, List[str]] = {key: [] for key in nodes}

    for key, node in nodes.items():
        for dep in node.depends_on:
            if dep not in nodes:
                issues.append(GraphIssue(
                    "UnknownDependency",
                    f"Node '{key}' depends on unknown node '{dep}'",
                    (key, dep)
                ))
                continue
            if dep not in dependencies[key]:
                dependencies[key].append(dep)

    if raw_edges is None:
        return dependencies
    if not isinstance(raw_edges, list):
        issues.append(GraphIssue("InvalidNode", "'edges' must be an array of {from, to} objects"))
        return dependencies

    for index, raw in enumerate(raw_edges):
        try:
            edge = DagEdge.model_validate(raw)
        except ValidationError:
            issues.append(GraphIssue("InvalidNode", f"Edge #{index} must name 'from' and 'to'"))
            continue

        missing = [k for k in (edge.source, edge.target) if k not in nodes]
        if missing:
            issues.append(GraphIssue(
                "UnknownDependency",
                f"Edge {edge.source} -> {edge.target} references unknown node(s): {', '.join(missing)}",
                tuple(missing)
            ))
            continue
        if edge.source not in dependencies[edge.target]:
            dependencies[edge.target].append(edge.source)

    return dependencies


def _find_cycles(keys: List[str], dependencies: Dict[str, List[str]]) -> List[GraphIssue]:
    """Report one full cycle per strongly connected component"""
    G = nx.DiGraph()
    G.add_nodes_from(keys)
    for key, deps in dependencies.items():
        for dep in deps:
            G.add_edge(dep, key)

    position = {key: index for index, key in enumerate(keys)}
    issues: List[GraphIssue] = []

    components = sorted(
        nx.strongly_connected_components(G),
        key=lambda component: min(position[k] for k in component)
    )
    for component in components:
        start = min(component, key=position.__getitem__)
        if len(component) == 1 and not G.has_edge(start, start):
            continue

        edges = nx.find_cycle(G.subgraph(component), source=start)
        cycle = [u for u, _v in edges]
        path = " -> ".join(cycle + [cycle[0]])
        issues.append(GraphIssue("CycleDetected", f"Cycle detected: {path}", tuple(cycle)))

    return issues
