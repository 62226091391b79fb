"""
Planning system models
Normalized graph arena, validation issues and execution plans
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from src.pipelines.models import DagNode
from .exceptions import GRAPH_ERRORS, GraphError


@dataclass(frozen=True)
class GraphIssue:
    """One validation finding against a raw DAG payload"""

    code: str
    message: str
    node_keys: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "nodeKeys": list(self.node_keys),
        }


@dataclass(frozen=True)
class NormalizedGraph:
    """
    Canonical DAG form: nodes keyed by key plus key->key adjacency maps.

    `dependencies[k]` is the effective dependency set of `k` (declared
    dependsOn first, then incoming edges, duplicates merged) and
    `dependents[k]` its reverse.
    """

    nodes: Mapping[str, DagNode]
    keys: Tuple[str, ...]
    dependencies: Mapping[str, Tuple[str, ...]]
    dependents: Mapping[str, Tuple[str, ...]]

    def __len__(self) -> int:
        return len(self.keys)

    def node(self, key: str) -> DagNode:
        return self.nodes[key]


@dataclass
class ValidationResult:
    """Either a normalized graph or the list of issues, never both"""

    graph: Optional[NormalizedGraph] = None
    errors: List[GraphIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.graph is not None and not self.errors

    def raise_for_errors(self, pipeline_version_id: Optional[str] = None) -> NormalizedGraph:
        """Return the graph or raise the GraphError matching the first issue"""
        if self.ok:
            return self.graph

        first = self.errors[0]
        error_cls = GRAPH_ERRORS.get(first.code, GraphError)
        node_keys: List[str] = []
        for issue in self.errors:
            for key in issue.node_keys:
                if key not in node_keys:
                    node_keys.append(key)

        message = first.message
        if len(self.errors) > 1:
            message = f"{message} (+{len(self.errors) - 1} more issue(s))"

        raise error_cls(
            message,
            node_keys=node_keys,
            issues=self.errors,
            pipeline_version_id=pipeline_version_id
        )


@dataclass(frozen=True)
class ExecutionPlan:
    """Deterministic execution order of a normalized graph"""

    plan: Tuple[str, ...]
    batches: Tuple[Tuple[str, ...], ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": list(self.plan),
            "batches": [list(batch) for batch in self.batches],
        }
