"""Graph ingestion: wire-format parsing and structural validation.

Graphs are validated once, when they enter the system (file import, store
creation, replacement payloads). The scheduler assumes a validated graph and
only degrades defensively if one slips through.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from taskgraph.graph.models import (
    DoneCriteria,
    Edge,
    EdgeCondition,
    EdgeType,
    ExecutionGraph,
    ExecutionPolicy,
    GraphMode,
    Node,
    NodeStatus,
    NodeType,
)
from taskgraph.storage.common import from_iso, to_iso


class GraphValidationError(ValueError):
    """Raised when a graph payload or snapshot is structurally invalid."""

    def __init__(self, issues: list[str], *, graph_id: str | None = None) -> None:
        self.issues = list(issues)
        self.graph_id = graph_id
        prefix = f"Invalid graph {graph_id!r}" if graph_id else "Invalid graph"
        super().__init__(f"{prefix}: " + "; ".join(self.issues))


def validate_graph(graph: ExecutionGraph) -> ExecutionGraph:
    """Raise ``GraphValidationError`` listing every structural problem."""

    issues: list[str] = []
    if not isinstance(graph.graph_id, str) or not graph.graph_id.strip():
        issues.append("graph id is required")
    if not isinstance(graph.task_id, str) or not graph.task_id.strip():
        issues.append("task id is required")
    if not isinstance(graph.graph_version, int) or graph.graph_version < 1:
        issues.append(f"graphVersion must be an integer >= 1, got {graph.graph_version!r}")
    if not _is_member(graph.mode, GraphMode):
        issues.append(f"unknown graph mode {graph.mode!r}")
    issues.extend(_policy_issues(graph.policy))
    issues.extend(_node_issues(graph))
    issues.extend(_edge_issues(graph))
    for sink_id in graph.done_criteria.completion_sink_node_ids:
        if sink_id not in graph.nodes:
            issues.append(f"completion sink {sink_id!r} does not exist")
    if not issues:
        cycle = find_hard_cycle(graph)
        if cycle is not None:
            issues.append("hard dependency cycle: " + " -> ".join(cycle))
    if issues:
        raise GraphValidationError(issues, graph_id=graph.graph_id or None)
    return graph


def find_hard_cycle(graph: ExecutionGraph) -> list[str] | None:
    """Return one cycle made of hard edges, or None."""

    adjacency: dict[str, list[str]] = {node_id: [] for node_id in graph.nodes}
    for edge in graph.edges:
        if edge.edge_type == EdgeType.HARD and edge.from_node in adjacency:
            adjacency[edge.from_node].append(edge.to_node)

    visited: set[str] = set()
    for root in sorted(adjacency):
        if root in visited:
            continue
        # Explicit stack so long dependency chains do not hit the recursion limit.
        path: list[str] = [root]
        on_path: set[str] = {root}
        stack: list[Iterator[str]] = [iter(adjacency[root])]
        while stack:
            target = next(stack[-1], None)
            if target is None:
                stack.pop()
                finished = path.pop()
                on_path.discard(finished)
                visited.add(finished)
                continue
            if target in on_path:
                return [*path[path.index(target) :], target]
            if target in visited or target not in adjacency:
                continue
            path.append(target)
            on_path.add(target)
            stack.append(iter(adjacency[target]))
    return None


def graph_from_payload(
    payload: Mapping[str, Any],
    *,
    policy_defaults: ExecutionPolicy | None = None,
) -> ExecutionGraph:
    """Parse the JSON wire shape into a validated ``ExecutionGraph``."""

    issues: list[str] = []
    graph_id = _as_str(payload.get("id") or payload.get("graph_id"))
    task_id = _as_str(payload.get("taskId") or payload.get("task_id"))

    nodes = _parse_nodes(payload.get("nodes"), issues)
    edges = _parse_edges(payload.get("edges", []), issues)
    policy = _parse_policy(payload.get("policy"), policy_defaults or ExecutionPolicy(), issues)
    done_criteria = _parse_done_criteria(payload.get("doneCriteria"), issues)
    mode = _parse_enum(payload.get("mode", GraphMode.PROJECT.value), GraphMode, "mode", issues)
    graph_version = payload.get("graphVersion", 1)
    if not isinstance(graph_version, int) or isinstance(graph_version, bool):
        issues.append(f"graphVersion must be an integer, got {graph_version!r}")
        graph_version = 1
    stamps = {
        key: _parse_datetime(payload.get(key), key, issues)
        for key in ("createdAt", "updatedAt", "startedAt", "completedAt", "timedOutAt")
    }

    if issues:
        raise GraphValidationError(issues, graph_id=graph_id or None)

    nodes, edges = _reconcile_dependencies(nodes, edges)
    graph = ExecutionGraph(
        graph_id=graph_id,
        task_id=task_id,
        nodes=nodes,
        edges=tuple(edges),
        graph_version=graph_version,
        mode=mode,
        policy=policy,
        done_criteria=done_criteria,
        status=_as_optional_str(payload.get("status")),
        created_at=stamps["createdAt"],
        updated_at=stamps["updatedAt"],
        started_at=stamps["startedAt"],
        completed_at=stamps["completedAt"],
        timed_out_at=stamps["timedOutAt"],
    )
    return validate_graph(graph)


def graph_to_payload(graph: ExecutionGraph) -> dict[str, Any]:
    """Serialize a graph to the JSON wire shape."""

    payload: dict[str, Any] = {
        "id": graph.graph_id,
        "taskId": graph.task_id,
        "graphVersion": graph.graph_version,
        "mode": _value(graph.mode),
        "policy": {
            "maxConcurrent": graph.policy.max_concurrent,
            "nodeTimeoutSeconds": graph.policy.node_timeout_seconds,
            "graphTimeoutSeconds": graph.policy.graph_timeout_seconds,
        },
        "nodes": {node_id: _node_to_payload(node) for node_id, node in graph.nodes.items()},
        "edges": [
            {
                "from": edge.from_node,
                "to": edge.to_node,
                "type": _value(edge.edge_type),
                "condition": _value(edge.condition),
            }
            for edge in graph.edges
        ],
        "doneCriteria": {
            "allRequiredGatesPassed": graph.done_criteria.all_required_gates_passed,
            "noRunnableOrPendingWork": graph.done_criteria.no_runnable_or_pending_work,
            "completionSinkNodeIds": list(graph.done_criteria.completion_sink_node_ids),
        },
    }
    optional = {
        "status": graph.status,
        "createdAt": to_iso(graph.created_at),
        "updatedAt": to_iso(graph.updated_at),
        "startedAt": to_iso(graph.started_at),
        "completedAt": to_iso(graph.completed_at),
        "timedOutAt": to_iso(graph.timed_out_at),
    }
    payload.update({key: value for key, value in optional.items() if value is not None})
    return payload


def load_graph_file(
    path: Path,
    *,
    policy_defaults: ExecutionPolicy | None = None,
) -> ExecutionGraph:
    """Read and validate a graph JSON document."""

    raw = json.loads(path.read_text("utf-8"))
    if not isinstance(raw, dict):
        raise GraphValidationError([f"expected a JSON object in {path}"])
    return graph_from_payload(raw, policy_defaults=policy_defaults)


def write_graph_file(path: Path, graph: ExecutionGraph) -> None:
    """Persist a graph using deterministic JSON formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(graph_to_payload(graph), ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )


def _policy_issues(policy: ExecutionPolicy) -> list[str]:
    issues: list[str] = []
    if not _is_positive_int(policy.max_concurrent):
        issues.append(
            f"policy.maxConcurrent must be an integer >= 1, got {policy.max_concurrent!r}",
        )
    if not _is_positive_int(policy.node_timeout_seconds):
        issues.append(
            f"policy.nodeTimeoutSeconds must be a positive integer, "
            f"got {policy.node_timeout_seconds!r}",
        )
    if not _is_positive_int(policy.graph_timeout_seconds):
        issues.append(
            f"policy.graphTimeoutSeconds must be a positive integer, "
            f"got {policy.graph_timeout_seconds!r}",
        )
    return issues


def _node_issues(graph: ExecutionGraph) -> list[str]:
    issues: list[str] = []
    if not graph.nodes:
        issues.append("graph must contain at least one node")
    edge_pairs = {(edge.from_node, edge.to_node) for edge in graph.edges}
    for key, node in graph.nodes.items():
        if key != node.node_id:
            issues.append(f"node key {key!r} does not match node id {node.node_id!r}")
        if not _is_member(node.node_type, NodeType):
            issues.append(f"node {key!r} has unknown type {node.node_type!r}")
        if not _is_member(node.status, NodeStatus):
            issues.append(f"node {key!r} has unknown status {node.status!r}")
        for dep in node.deps:
            if dep not in graph.nodes:
                issues.append(f"node {key!r} depends on missing node {dep!r}")
            elif (dep, key) not in edge_pairs:
                issues.append(f"node {key!r} lists dep {dep!r} without a matching edge")
    return issues


def _edge_issues(graph: ExecutionGraph) -> list[str]:
    issues: list[str] = []
    seen: set[tuple[str, str]] = set()
    for edge in graph.edges:
        label = f"edge {edge.from_node!r} -> {edge.to_node!r}"
        if edge.from_node not in graph.nodes:
            issues.append(f"{label} references missing node {edge.from_node!r}")
        if edge.to_node not in graph.nodes:
            issues.append(f"{label} references missing node {edge.to_node!r}")
        if edge.from_node == edge.to_node:
            issues.append(f"{label} is a self-loop")
        if (edge.from_node, edge.to_node) in seen:
            issues.append(f"{label} is duplicated")
        seen.add((edge.from_node, edge.to_node))
        if not _is_member(edge.edge_type, EdgeType):
            issues.append(f"{label} has unknown type {edge.edge_type!r}")
        if not _is_member(edge.condition, EdgeCondition):
            issues.append(f"{label} has unknown condition {edge.condition!r}")
    return issues


def _reconcile_dependencies(
    nodes: dict[str, Node],
    edges: list[Edge],
) -> tuple[dict[str, Node], list[Edge]]:
    """Make ``deps`` and edges agree.

    A dep without an edge gets a hard ``on_success`` edge; an edge source
    missing from the target's ``deps`` is appended to them.
    """

    pairs = {(edge.from_node, edge.to_node) for edge in edges}
    reconciled_edges = list(edges)
    for node_id in sorted(nodes):
        for dep in nodes[node_id].deps:
            if (dep, node_id) not in pairs:
                reconciled_edges.append(Edge(from_node=dep, to_node=node_id))
                pairs.add((dep, node_id))

    sources: dict[str, list[str]] = {}
    for edge in reconciled_edges:
        sources.setdefault(edge.to_node, []).append(edge.from_node)
    reconciled_nodes: dict[str, Node] = {}
    for node_id, node in nodes.items():
        deps = list(dict.fromkeys([*node.deps, *sources.get(node_id, [])]))
        reconciled_nodes[node_id] = (
            node if tuple(deps) == node.deps else replace(node, deps=tuple(deps))
        )
    return reconciled_nodes, reconciled_edges


def _parse_nodes(raw: object, issues: list[str]) -> dict[str, Node]:
    entries: list[tuple[str, object]] = []
    if isinstance(raw, dict):
        entries = [(str(key), value) for key, value in raw.items()]
    elif isinstance(raw, list):
        for index, item in enumerate(raw):
            node_id = item.get("id") if isinstance(item, dict) else None
            if not isinstance(node_id, str) or not node_id.strip():
                issues.append(f"nodes[{index}].id must be a non-empty string")
                continue
            entries.append((node_id, item))
    else:
        issues.append("graph.nodes must be an object or an array")
        return {}

    nodes: dict[str, Node] = {}
    for node_id, item in entries:
        if not isinstance(item, dict):
            issues.append(f"node {node_id!r} must be an object")
            continue
        if node_id in nodes:
            issues.append(f"node {node_id!r} is duplicated")
            continue
        deps = item.get("deps", [])
        if not isinstance(deps, list) or not all(isinstance(dep, str) for dep in deps):
            issues.append(f"node {node_id!r} deps must be an array of strings")
            deps = []
        nodes[node_id] = Node(
            node_id=node_id,
            node_type=_parse_enum(item.get("type"), NodeType, f"node {node_id!r} type", issues),
            status=_parse_enum(
                item.get("status", NodeStatus.PENDING.value),
                NodeStatus,
                f"node {node_id!r} status",
                issues,
            ),
            deps=tuple(deps),
            title=_as_optional_str(item.get("title")),
            required=item.get("required", True) is not False,
            started_at=_parse_datetime(
                item.get("startedAt"), f"node {node_id!r} startedAt", issues
            ),
            completed_at=_parse_datetime(
                item.get("completedAt"), f"node {node_id!r} completedAt", issues
            ),
            error=_as_optional_str(item.get("error")),
            feedback=_as_optional_str(item.get("feedback")),
        )
    return nodes


def _parse_edges(raw: object, issues: list[str]) -> list[Edge]:
    if not isinstance(raw, list):
        issues.append("graph.edges must be an array")
        return []
    edges: list[Edge] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            issues.append(f"edges[{index}] must be an object")
            continue
        from_node = item.get("from")
        to_node = item.get("to")
        if not isinstance(from_node, str) or not isinstance(to_node, str):
            issues.append(f"edges[{index}] requires string 'from' and 'to'")
            continue
        edges.append(
            Edge(
                from_node=from_node,
                to_node=to_node,
                edge_type=_parse_enum(
                    item.get("type") or EdgeType.HARD.value,
                    EdgeType,
                    f"edges[{index}].type",
                    issues,
                ),
                condition=_parse_enum(
                    item.get("condition") or EdgeCondition.ON_SUCCESS.value,
                    EdgeCondition,
                    f"edges[{index}].condition",
                    issues,
                ),
            ),
        )
    return edges


def _parse_policy(raw: object, defaults: ExecutionPolicy, issues: list[str]) -> ExecutionPolicy:
    if raw is None:
        return defaults
    if not isinstance(raw, dict):
        issues.append("graph.policy must be an object")
        return defaults
    return ExecutionPolicy(
        max_concurrent=_int_field(raw, "maxConcurrent", defaults.max_concurrent, issues),
        node_timeout_seconds=_int_field(
            raw,
            "nodeTimeoutSeconds",
            defaults.node_timeout_seconds,
            issues,
        ),
        graph_timeout_seconds=_int_field(
            raw,
            "graphTimeoutSeconds",
            defaults.graph_timeout_seconds,
            issues,
        ),
    )


def _parse_done_criteria(raw: object, issues: list[str]) -> DoneCriteria:
    if raw is None:
        return DoneCriteria()
    if not isinstance(raw, dict):
        issues.append("graph.doneCriteria must be an object")
        return DoneCriteria()
    sinks = raw.get("completionSinkNodeIds", [])
    if not isinstance(sinks, list) or not all(isinstance(sink, str) for sink in sinks):
        issues.append("doneCriteria.completionSinkNodeIds must be an array of strings")
        sinks = []
    return DoneCriteria(
        all_required_gates_passed=raw.get("allRequiredGatesPassed", True) is not False,
        no_runnable_or_pending_work=raw.get("noRunnableOrPendingWork", True) is not False,
        completion_sink_node_ids=tuple(dict.fromkeys(sinks)),
    )


def _int_field(raw: Mapping[str, Any], key: str, default: int, issues: list[str]) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        issues.append(f"policy.{key} must be an integer, got {value!r}")
        return default
    return value


def _parse_enum(value: object, enum_type: type[Any], label: str, issues: list[str]) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        issues.append(f"{label} has unknown value {value!r} (expected one of: {allowed})")
        return value


def _parse_datetime(value: object, label: str, issues: list[str]) -> datetime | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        issues.append(f"{label} must be an ISO-8601 string, got {value!r}")
        return None
    try:
        return from_iso(value.replace("Z", "+00:00"))
    except ValueError:
        issues.append(f"{label} is not a valid ISO-8601 timestamp: {value!r}")
        return None


def _node_to_payload(node: Node) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": _value(node.node_type),
        "status": _value(node.status),
        "deps": list(node.deps),
    }
    if node.node_type == NodeType.GATE:
        payload["required"] = node.required
    optional = {
        "title": node.title,
        "startedAt": to_iso(node.started_at),
        "completedAt": to_iso(node.completed_at),
        "error": node.error,
        "feedback": node.feedback,
    }
    payload.update({key: value for key, value in optional.items() if value is not None})
    return payload


def _is_member(value: object, enum_type: type[Any]) -> bool:
    try:
        enum_type(value)
    except ValueError:
        return False
    return True


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _value(item: object) -> object:
    return getattr(item, "value", item)


def _as_str(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None
