"""Graph helpers used to plan a workflow run."""

from __future__ import annotations

import heapq
from typing import Any, Dict, List, Mapping, Set

from .contracts import WorkflowDefinition, WorkflowEdge, WorkflowNode
from .errors import CyclicWorkflowError, WorkflowValidationError


def validate_edges(workflow: WorkflowDefinition) -> None:
    """Reject duplicate node ids and edges pointing at unknown nodes."""
    seen: Set[str] = set()
    for node in workflow.nodes:
        if node.id in seen:
            raise WorkflowValidationError(f"Duplicate node id: {node.id}")
        seen.add(node.id)
    for edge in workflow.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                raise WorkflowValidationError(
                    f"Edge {edge.source} -> {edge.target} references unknown node {endpoint}"
                )


def topological_order(workflow: WorkflowDefinition) -> List[WorkflowNode]:
    """Return nodes in dependency order using Kahn's algorithm.

    Ties are broken by the order in which nodes are declared, so the result is
    deterministic for a given definition.

    Raises:
        WorkflowValidationError: If an edge references an unknown node.
        CyclicWorkflowError: If the graph is not a DAG.
    """
    validate_edges(workflow)

    position = {node.id: index for index, node in enumerate(workflow.nodes)}
    in_degree: Dict[str, int] = {node.id: 0 for node in workflow.nodes}
    children: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        if edge.target not in children[edge.source]:
            children[edge.source].append(edge.target)
            in_degree[edge.target] += 1

    ready = [position[n] for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: List[WorkflowNode] = []
    while ready:
        node = workflow.nodes[heapq.heappop(ready)]
        ordered.append(node)
        for child in children[node.id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, position[child])

    if len(ordered) != len(workflow.nodes):
        remaining = [n.id for n in workflow.nodes if in_degree[n.id] > 0]
        raise CyclicWorkflowError(remaining)
    return ordered


def incoming_edges(workflow: WorkflowDefinition) -> Dict[str, List[WorkflowEdge]]:
    """Map each node id to the edges that feed it."""
    incoming: Dict[str, List[WorkflowEdge]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        incoming.setdefault(edge.target, []).append(edge)
    return incoming


def descendants(workflow: WorkflowDefinition, node_id: str) -> Set[str]:
    """All nodes reachable from ``node_id`` (excluding itself)."""
    children: Dict[str, List[str]] = {}
    for edge in workflow.edges:
        children.setdefault(edge.source, []).append(edge.target)
    found: Set[str] = set()
    stack = list(children.get(node_id, []))
    while stack:
        current = stack.pop()
        if current in found:
            continue
        found.add(current)
        stack.extend(children.get(current, []))
    return found


def resolve_inputs(
    edges: List[WorkflowEdge],
    outputs: Mapping[str, Any],
    trigger_input: Mapping[str, Any],
) -> Dict[str, Any]:
    """Build the input payload of a node from upstream outputs.

    Root nodes receive the trigger input. Otherwise each upstream output is
    keyed by the edge's ``target_handle`` when set, else by the source node id.
    When an edge names a ``source_handle`` and the upstream output is a mapping,
    only that field is forwarded.
    """
    if not edges:
        return dict(trigger_input)

    resolved: Dict[str, Any] = {}
    for edge in edges:
        if edge.source not in outputs:
            continue
        value = outputs[edge.source]
        if edge.source_handle and isinstance(value, Mapping):
            value = value.get(edge.source_handle)
        resolved[edge.target_handle or edge.source] = value
    return resolved
