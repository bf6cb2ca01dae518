"""Deterministic admission control over execution graph snapshots.

One call to :func:`tick` decides which pending nodes start running:

1. readiness - every hard edge into the node must be satisfied by the
   upstream node's status and the edge condition (soft edges never block);
2. allow-list - when the caller passes ``allowed_node_ids`` only those nodes
   may start, regardless of type;
3. capacity - ready gates always start, ready work nodes start only while the
   pre-tick count of running work nodes is below ``policy.max_concurrent``.

The function is pure: no I/O, no mutation of its input, same output for the
same input. Nodes that are not ``pending`` are never touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import replace

from taskgraph.graph.models import (
    DispatchEvent,
    Edge,
    EdgeCondition,
    EdgeType,
    ExecutionGraph,
    Node,
    NodeStatus,
    NodeType,
    TickOptions,
    TickResult,
)
from taskgraph.storage.common import utc_now

logger = logging.getLogger(__name__)

_SATISFYING_CONDITIONS: dict[NodeStatus, frozenset[EdgeCondition]] = {
    NodeStatus.DONE: frozenset({EdgeCondition.ON_SUCCESS, EdgeCondition.ALWAYS}),
    NodeStatus.FAILED: frozenset({EdgeCondition.ON_FAILURE, EdgeCondition.ALWAYS}),
    # Not terminal, but no longer progressing on its own.
    NodeStatus.BLOCKED: frozenset({EdgeCondition.ALWAYS}),
    NodeStatus.AWAITING_HUMAN: frozenset({EdgeCondition.ALWAYS}),
}

_KNOWN_EDGE_TYPES = frozenset(item.value for item in EdgeType)
_KNOWN_CONDITIONS = frozenset(item.value for item in EdgeCondition)


def incoming_edges(graph: ExecutionGraph) -> dict[str, list[Edge]]:
    """Index edges by target node id, preserving edge order."""

    index: dict[str, list[Edge]] = {}
    for edge in graph.edges:
        index.setdefault(edge.to_node, []).append(edge)
    return index


def is_ready(
    node: Node,
    graph: ExecutionGraph,
    *,
    incoming: Mapping[str, list[Edge]] | None = None,
) -> bool:
    """Return True when every hard edge into ``node`` permits dispatch."""

    index = incoming if incoming is not None else incoming_edges(graph)
    edges = index.get(node.node_id, [])
    return all(_edge_satisfied(edge, graph) for edge in edges)


def select_for_dispatch(
    ready_nodes: Iterable[Node],
    graph: ExecutionGraph,
    allowed_node_ids: Iterable[str] | None = None,
) -> list[Node]:
    """Apply the allow-list and work-node capacity to ready nodes.

    Returns admitted nodes in ascending node id order. Work slots are granted
    to the lowest ids first.
    """

    candidates = sorted(ready_nodes, key=lambda node: node.node_id)
    if allowed_node_ids is not None:
        allowed = frozenset(allowed_node_ids)
        candidates = [node for node in candidates if node.node_id in allowed]

    slots = max(0, _max_concurrent(graph) - count_running_work(graph))
    admitted: list[Node] = []
    for node in candidates:
        if node.node_type == NodeType.GATE:
            admitted.append(node)
            continue
        if slots <= 0:
            continue
        admitted.append(node)
        slots -= 1
    return admitted


def tick(graph: ExecutionGraph, options: TickOptions | None = None) -> TickResult:
    """Compute the next snapshot and the dispatch events for one invocation."""

    options = options or TickOptions(now=utc_now())
    incoming = incoming_edges(graph)
    ready = [
        node
        for node in graph.nodes.values()
        if node.status == NodeStatus.PENDING
        and _is_schedulable_type(node, graph)
        and is_ready(node, graph, incoming=incoming)
    ]
    admitted = select_for_dispatch(ready, graph, options.allowed_node_ids)
    if not admitted:
        return TickResult(graph=graph, events=[])

    updates: dict[str, Node] = {}
    events: list[DispatchEvent] = []
    for node in admitted:
        updates[node.node_id] = replace(node, status=NodeStatus.RUNNING)
        events.append(
            DispatchEvent(
                node_id=node.node_id,
                node_type=node.node_type,
                timestamp=options.now,
            ),
        )
    logger.debug(
        "Tick dispatched %d node(s) for graph %s: %s",
        len(events),
        graph.graph_id,
        ", ".join(event.node_id for event in events),
    )
    return TickResult(graph=graph.with_nodes(updates), events=events)


def count_running_work(graph: ExecutionGraph) -> int:
    """Count work nodes currently in ``running`` status."""

    return sum(
        1
        for node in graph.nodes.values()
        if node.node_type == NodeType.WORK and node.status == NodeStatus.RUNNING
    )


def _max_concurrent(graph: ExecutionGraph) -> int:
    value = graph.policy.max_concurrent
    if not isinstance(value, int) or value < 1:
        logger.warning(
            "Graph %s has invalid max_concurrent=%r; using 1",
            graph.graph_id,
            value,
        )
        return 1
    return value


def _is_schedulable_type(node: Node, graph: ExecutionGraph) -> bool:
    if node.node_type in (NodeType.WORK, NodeType.GATE):
        return True
    logger.warning(
        "Skipping node %s in graph %s: unknown node type %r",
        node.node_id,
        graph.graph_id,
        node.node_type,
    )
    return False


def _edge_satisfied(edge: Edge, graph: ExecutionGraph) -> bool:
    edge_type = getattr(edge.edge_type, "value", edge.edge_type)
    condition = getattr(edge.condition, "value", edge.condition)
    if edge_type not in _KNOWN_EDGE_TYPES or condition not in _KNOWN_CONDITIONS:
        logger.warning(
            "Ignoring edge %s -> %s in graph %s: unknown type=%r condition=%r",
            edge.from_node,
            edge.to_node,
            graph.graph_id,
            edge_type,
            condition,
        )
        return True
    if edge_type == EdgeType.SOFT.value:
        return True

    dependency = graph.nodes.get(edge.from_node)
    if dependency is None:
        logger.warning(
            "Ignoring edge %s -> %s in graph %s: upstream node does not exist",
            edge.from_node,
            edge.to_node,
            graph.graph_id,
        )
        return True

    satisfying = _SATISFYING_CONDITIONS.get(dependency.status, frozenset())
    return EdgeCondition(condition) in satisfying
