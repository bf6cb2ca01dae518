"""Graph completion and progress checks driven by ``doneCriteria``."""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import datetime

from taskgraph.graph.models import (
    GRAPH_STATUS_COMPLETED,
    INCOMPLETE_NODE_STATUSES,
    ExecutionGraph,
    NodeStatus,
    NodeType,
)


def is_graph_complete(graph: ExecutionGraph) -> bool:
    """Return True when every enabled completion criterion holds."""

    criteria = graph.done_criteria
    if criteria.all_required_gates_passed and not all_required_gates_passed(graph):
        return False
    if criteria.no_runnable_or_pending_work and has_in_progress_nodes(graph):
        return False
    return all(
        graph.nodes.get(sink_id) is not None
        and graph.nodes[sink_id].status == NodeStatus.DONE
        for sink_id in criteria.completion_sink_node_ids
    )


def all_required_gates_passed(graph: ExecutionGraph) -> bool:
    return all(
        node.status == NodeStatus.DONE
        for node in graph.nodes.values()
        if node.node_type == NodeType.GATE and node.required
    )


def has_in_progress_nodes(graph: ExecutionGraph) -> bool:
    """True while any node is pending, running, blocked, or awaiting a human."""

    return any(node.status in INCOMPLETE_NODE_STATUSES for node in graph.nodes.values())


def is_graph_in_progress(graph: ExecutionGraph) -> bool:
    """True for graphs the runtime should keep ticking."""

    if graph.timed_out_at is not None or graph.completed_at is not None:
        return False
    return has_in_progress_nodes(graph)


def count_statuses(graph: ExecutionGraph) -> dict[NodeStatus, int]:
    counts = Counter(NodeStatus(node.status) for node in graph.nodes.values())
    return {status: counts[status] for status in NodeStatus if counts[status]}


def with_completion(graph: ExecutionGraph, now: datetime) -> ExecutionGraph:
    """Stamp the graph completed when its criteria hold; otherwise return it unchanged."""

    if graph.completed_at is not None or graph.timed_out_at is not None:
        return graph
    if not is_graph_complete(graph):
        return graph
    return replace(graph, status=GRAPH_STATUS_COMPLETED, completed_at=now)
