"""Human verification of gate nodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from taskgraph.graph.completion import with_completion
from taskgraph.graph.models import ExecutionGraph, GraphEvent, Node, NodeStatus, NodeType
from taskgraph.graph.store import GraphNotFoundError, GraphStore, GraphVersionConflictError
from taskgraph.storage.common import utc_now

logger = logging.getLogger(__name__)

GATE_REJECTED_ERROR = "gate_rejected"


class GateResolutionError(RuntimeError):
    """Raised when a gate cannot be approved or rejected."""


@dataclass(slots=True)
class GateResolution:
    """Outcome of one approve/reject call."""

    graph: ExecutionGraph
    node_id: str
    approved: bool
    previous_version: int
    graph_version: int
    feedback: str | None = None


def find_awaiting_gate(graph: ExecutionGraph, node_id: str | None = None) -> Node:
    """Pick the gate to resolve: the named one, or the only one awaiting a human."""

    if node_id is not None:
        node = graph.nodes.get(node_id)
        if node is None:
            raise GateResolutionError(f"Node {node_id} not found in graph {graph.graph_id}")
        if node.node_type != NodeType.GATE:
            raise GateResolutionError(f"Node {node_id} is not a gate")
        if node.status != NodeStatus.AWAITING_HUMAN:
            raise GateResolutionError(
                f"Gate {node_id} is {NodeStatus(node.status).value}, not awaiting_human",
            )
        return node

    candidates = sorted(
        (
            node
            for node in graph.nodes.values()
            if node.node_type == NodeType.GATE and node.status == NodeStatus.AWAITING_HUMAN
        ),
        key=lambda node: node.node_id,
    )
    if not candidates:
        raise GateResolutionError(f"No gate is awaiting a decision in graph {graph.graph_id}")
    if len(candidates) > 1:
        names = ", ".join(node.node_id for node in candidates)
        raise GateResolutionError(
            f"Several gates are awaiting a decision ({names}); pass a node id",
        )
    return candidates[0]


def resolve_gate(  # noqa: PLR0913
    store: GraphStore,
    *,
    task_id: str,
    node_id: str | None,
    approved: bool,
    if_match_graph_version: int | None = None,
    feedback: str | None = None,
    now: datetime | None = None,
) -> GateResolution:
    """Approve or reject an ``awaiting_human`` gate.

    Approval moves the gate to ``done``; rejection moves it to ``failed`` and
    records the feedback as the node error. The write is conditional on
    ``if_match_graph_version`` (defaults to the version just read), so a
    decision taken on a stale view is refused with
    ``GraphVersionConflictError`` instead of overwriting newer progress.
    """

    graph = store.get_graph_for_task(task_id)
    if graph is None:
        raise GraphNotFoundError(f"No graph for task {task_id}")
    expected_version = (
        graph.graph_version if if_match_graph_version is None else if_match_graph_version
    )
    if graph.graph_version != expected_version:
        raise GraphVersionConflictError(
            graph.graph_id,
            expected_version=expected_version,
            actual_version=graph.graph_version,
        )

    gate = find_awaiting_gate(graph, node_id)
    timestamp = now or utc_now()
    to_status = NodeStatus.DONE if approved else NodeStatus.FAILED
    resolved = replace(
        gate,
        status=to_status,
        completed_at=timestamp,
        feedback=feedback,
        error=None if approved else (feedback or GATE_REJECTED_ERROR),
    )
    next_graph = with_completion(graph.with_nodes({gate.node_id: resolved}), timestamp)
    reason = "gate_approved" if approved else "gate_rejected"
    details: dict[str, object] = {"approved": approved}
    if feedback:
        details["feedback"] = feedback
    events = [
        GraphEvent(
            event_type="gate_verification",
            graph_id=graph.graph_id,
            timestamp=timestamp,
            node_id=gate.node_id,
            reason=reason,
            details=details,
        ),
        GraphEvent(
            event_type="node_status",
            graph_id=graph.graph_id,
            timestamp=timestamp,
            node_id=gate.node_id,
            from_status=NodeStatus.AWAITING_HUMAN,
            to_status=to_status,
            reason=reason,
        ),
    ]
    persisted = store.replace_graph(
        graph.graph_id,
        next_graph,
        if_match_graph_version=expected_version,
        events=events,
    )
    logger.info(
        "Gate %s in graph %s %s (version %d -> %d)",
        gate.node_id,
        graph.graph_id,
        "approved" if approved else "rejected",
        expected_version,
        persisted.graph_version,
    )
    return GateResolution(
        graph=persisted,
        node_id=gate.node_id,
        approved=approved,
        previous_version=expected_version,
        graph_version=persisted.graph_version,
        feedback=feedback,
    )
