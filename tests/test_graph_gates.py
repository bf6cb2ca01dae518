from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

import allure
import pytest

from taskgraph.graph.gates import (
    GATE_REJECTED_ERROR,
    GateResolutionError,
    find_awaiting_gate,
    resolve_gate,
)
from taskgraph.graph.models import (
    GRAPH_STATUS_COMPLETED,
    Edge,
    ExecutionGraph,
    Node,
    NodeStatus,
    NodeType,
)
from taskgraph.graph.store import (
    GraphNotFoundError,
    GraphVersionConflictError,
    InMemoryGraphStore,
)

pytestmark = [
    allure.epic("Execution Graph"),
    allure.feature("Gate Verification"),
]

DECIDED_AT = datetime(2026, 10, 18, 11, 0, tzinfo=UTC)


def _review_graph(*, review: NodeStatus = NodeStatus.AWAITING_HUMAN) -> ExecutionGraph:
    return ExecutionGraph(
        graph_id="graph-1",
        task_id="task-1",
        nodes={
            "build": Node(node_id="build", node_type=NodeType.WORK, status=NodeStatus.DONE),
            "review": Node(
                node_id="review",
                node_type=NodeType.GATE,
                status=review,
                deps=("build",),
            ),
        },
        edges=(Edge(from_node="build", to_node="review"),),
    )


def _two_gate_graph() -> ExecutionGraph:
    return ExecutionGraph(
        graph_id="graph-2",
        task_id="task-2",
        nodes={
            "qa": Node(node_id="qa", node_type=NodeType.GATE, status=NodeStatus.AWAITING_HUMAN),
            "legal": Node(
                node_id="legal",
                node_type=NodeType.GATE,
                status=NodeStatus.AWAITING_HUMAN,
            ),
            "ship": Node(node_id="ship", node_type=NodeType.WORK),
        },
    )


def test_approving_last_gate_completes_graph(memory_store: InMemoryGraphStore) -> None:
    memory_store.create_graph(_review_graph())

    resolution = resolve_gate(
        memory_store,
        task_id="task-1",
        node_id=None,
        approved=True,
        now=DECIDED_AT,
    )

    review = resolution.graph.nodes["review"]
    assert resolution.approved is True
    assert resolution.node_id == "review"
    assert (resolution.previous_version, resolution.graph_version) == (1, 2)
    assert review.status == NodeStatus.DONE
    assert review.completed_at == DECIDED_AT
    assert review.error is None
    assert resolution.graph.status == GRAPH_STATUS_COMPLETED
    assert resolution.graph.completed_at == DECIDED_AT


def test_rejecting_gate_records_feedback_as_error(memory_store: InMemoryGraphStore) -> None:
    memory_store.create_graph(_review_graph())

    resolution = resolve_gate(
        memory_store,
        task_id="task-1",
        node_id="review",
        approved=False,
        feedback="missing changelog",
        now=DECIDED_AT,
    )

    review = resolution.graph.nodes["review"]
    assert review.status == NodeStatus.FAILED
    assert review.error == "missing changelog"
    assert review.feedback == "missing changelog"
    assert resolution.graph.completed_at is None


def test_rejecting_without_feedback_uses_default_error(memory_store: InMemoryGraphStore) -> None:
    memory_store.create_graph(_review_graph())

    resolution = resolve_gate(memory_store, task_id="task-1", node_id=None, approved=False)

    assert resolution.graph.nodes["review"].error == GATE_REJECTED_ERROR


def test_gate_resolution_appends_audit_events(memory_store: InMemoryGraphStore) -> None:
    memory_store.create_graph(_review_graph())

    resolve_gate(
        memory_store,
        task_id="task-1",
        node_id="review",
        approved=False,
        feedback="redo",
        now=DECIDED_AT,
    )

    events = memory_store.get_events("graph-1")[1:]
    assert [event.event_type for event in events] == ["gate_verification", "node_status"]
    assert events[0].reason == "gate_rejected"
    assert events[0].details == {"approved": False, "feedback": "redo"}
    assert events[1].from_status == NodeStatus.AWAITING_HUMAN
    assert events[1].to_status == NodeStatus.FAILED
    assert all(event.timestamp == DECIDED_AT for event in events)


def test_stale_version_is_refused_before_writing(memory_store: InMemoryGraphStore) -> None:
    created = memory_store.create_graph(_review_graph())
    memory_store.replace_graph(
        "graph-1",
        created.with_nodes({"build": replace(created.nodes["build"], title="Build")}),
        if_match_graph_version=1,
    )

    with pytest.raises(GraphVersionConflictError) as exc_info:
        resolve_gate(
            memory_store,
            task_id="task-1",
            node_id="review",
            approved=True,
            if_match_graph_version=1,
        )

    assert exc_info.value.actual_version == 2
    stored = memory_store.get_graph("graph-1")
    assert stored is not None
    assert stored.nodes["review"].status == NodeStatus.AWAITING_HUMAN


def test_matching_version_is_accepted(memory_store: InMemoryGraphStore) -> None:
    memory_store.create_graph(_review_graph())

    resolution = resolve_gate(
        memory_store,
        task_id="task-1",
        node_id="review",
        approved=True,
        if_match_graph_version=1,
    )

    assert resolution.graph_version == 2


def test_unknown_task_raises_not_found(memory_store: InMemoryGraphStore) -> None:
    with pytest.raises(GraphNotFoundError, match="No graph for task ghost"):
        resolve_gate(memory_store, task_id="ghost", node_id=None, approved=True)


@pytest.mark.parametrize(
    ("node_id", "message"),
    [
        ("missing", "Node missing not found in graph graph-1"),
        ("build", "Node build is not a gate"),
    ],
)
def test_find_awaiting_gate_rejects_bad_node(node_id: str, message: str) -> None:
    with pytest.raises(GateResolutionError, match=message):
        find_awaiting_gate(_review_graph(), node_id)


def test_gate_that_is_not_awaiting_cannot_be_resolved() -> None:
    graph = _review_graph(review=NodeStatus.PENDING)

    with pytest.raises(GateResolutionError, match="Gate review is pending, not awaiting_human"):
        find_awaiting_gate(graph, "review")
    with pytest.raises(GateResolutionError, match="No gate is awaiting a decision"):
        find_awaiting_gate(graph)


def test_several_awaiting_gates_require_explicit_node() -> None:
    graph = _two_gate_graph()

    with pytest.raises(GateResolutionError, match=r"\(legal, qa\); pass a node id"):
        find_awaiting_gate(graph)
    assert find_awaiting_gate(graph, "qa").node_id == "qa"
