from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text

from taskgraph.graph.models import (
    Edge,
    ExecutionGraph,
    GraphEvent,
    Node,
    NodeStatus,
    NodeType,
)
from taskgraph.graph.repository import SqliteGraphRepository
from taskgraph.graph.store import (
    GRAPH_VERSION_CONFLICT,
    GraphAlreadyExistsError,
    GraphNotFoundError,
    GraphStore,
    GraphVersionConflictError,
    InMemoryGraphStore,
)
from taskgraph.graph.validation import GraphValidationError

pytestmark = [
    allure.epic("Execution Graph"),
    allure.feature("Versioned Storage"),
]

EVENT_TIME = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)


def _graph(graph_id: str = "graph-1", task_id: str = "task-1") -> ExecutionGraph:
    return ExecutionGraph(
        graph_id=graph_id,
        task_id=task_id,
        nodes={
            "plan": Node(node_id="plan", node_type=NodeType.WORK),
            "review": Node(node_id="review", node_type=NodeType.GATE, deps=("plan",)),
        },
        edges=(Edge(from_node="plan", to_node="review"),),
    )


def _with_status(graph: ExecutionGraph, node_id: str, status: NodeStatus) -> ExecutionGraph:
    return graph.with_nodes({node_id: replace(graph.nodes[node_id], status=status)})


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest) -> GraphStore:
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sqlite_repository")


def test_create_graph_starts_at_version_one(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    assert created.graph_version == 1
    assert created.created_at is not None
    assert store.get_graph("graph-1") == created
    assert store.get_graph_for_task("task-1") == created
    assert store.get_graph_version("graph-1", 1) == created
    assert [event.event_type for event in store.get_events("graph-1")] == ["graph_created"]


def test_create_graph_rejects_duplicate_graph_or_task(store: GraphStore) -> None:
    store.create_graph(_graph())

    with pytest.raises(GraphAlreadyExistsError, match="Graph already exists"):
        store.create_graph(_graph(task_id="task-2"))
    with pytest.raises(GraphAlreadyExistsError, match="Task already has a graph"):
        store.create_graph(_graph(graph_id="graph-2"))


def test_create_graph_validates_structure(store: GraphStore) -> None:
    broken = replace(_graph(), edges=())

    with pytest.raises(GraphValidationError, match="without a matching edge"):
        store.create_graph(broken)
    assert store.get_graph("graph-1") is None


def test_replace_graph_bumps_version_and_keeps_history(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    updated = store.replace_graph(
        "graph-1",
        _with_status(created, "plan", NodeStatus.RUNNING),
        if_match_graph_version=1,
    )

    assert updated.graph_version == 2
    assert updated.nodes["plan"].status == NodeStatus.RUNNING
    assert store.get_graph("graph-1") == updated
    assert store.get_graph_version("graph-1", 1) == created
    assert store.get_graph_version("graph-1", 2) == updated
    assert store.get_graph_version("graph-1", 3) is None


def test_replace_graph_rejects_stale_version(store: GraphStore) -> None:
    created = store.create_graph(_graph())
    store.replace_graph(
        "graph-1",
        _with_status(created, "plan", NodeStatus.RUNNING),
        if_match_graph_version=1,
    )

    with pytest.raises(GraphVersionConflictError) as exc_info:
        store.replace_graph(
            "graph-1",
            _with_status(created, "plan", NodeStatus.FAILED),
            if_match_graph_version=1,
        )

    error = exc_info.value
    assert error.code == GRAPH_VERSION_CONFLICT
    assert (error.graph_id, error.expected_version, error.actual_version) == ("graph-1", 1, 2)
    stored = store.get_graph("graph-1")
    assert stored is not None
    assert stored.graph_version == 2
    assert stored.nodes["plan"].status == NodeStatus.RUNNING


def test_replace_graph_pins_identity_fields(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    updated = store.replace_graph(
        "graph-1",
        replace(created, graph_id="other", task_id="other-task", graph_version=42),
        if_match_graph_version=1,
    )

    assert (updated.graph_id, updated.task_id, updated.graph_version) == ("graph-1", "task-1", 2)
    assert updated.created_at == created.created_at


def test_replace_graph_rejects_invalid_snapshot(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    with pytest.raises(GraphValidationError):
        store.replace_graph("graph-1", replace(created, nodes={}), if_match_graph_version=1)
    stored = store.get_graph("graph-1")
    assert stored is not None
    assert stored.graph_version == 1


def test_replace_unknown_graph_raises_not_found(store: GraphStore) -> None:
    with pytest.raises(GraphNotFoundError):
        store.replace_graph("missing", _graph(), if_match_graph_version=1)


def test_events_are_returned_in_append_order(store: GraphStore) -> None:
    store.create_graph(_graph())
    store.append_events(
        "graph-1",
        [
            GraphEvent(
                event_type="node_status",
                graph_id="graph-1",
                timestamp=EVENT_TIME,
                node_id="plan",
                from_status=NodeStatus.PENDING,
                to_status=NodeStatus.RUNNING,
                reason="deps_satisfied",
            ),
            GraphEvent(
                event_type="gate_verification",
                graph_id="graph-1",
                timestamp=EVENT_TIME,
                node_id="review",
                details={"approved": True},
            ),
        ],
    )

    events = store.get_events("graph-1")

    assert [event.event_type for event in events] == [
        "graph_created",
        "node_status",
        "gate_verification",
    ]
    assert events[1].from_status == NodeStatus.PENDING
    assert events[1].to_status == NodeStatus.RUNNING
    assert events[1].reason == "deps_satisfied"
    assert events[1].timestamp == EVENT_TIME
    assert events[2].details == {"approved": True}


def test_append_events_to_unknown_graph_raises(store: GraphStore) -> None:
    with pytest.raises(GraphNotFoundError):
        store.append_events(
            "missing",
            [GraphEvent(event_type="node_status", graph_id="missing", timestamp=EVENT_TIME)],
        )


def _running_event(node_id: str) -> GraphEvent:
    return GraphEvent(
        event_type="node_status",
        graph_id="graph-1",
        timestamp=EVENT_TIME,
        node_id=node_id,
        from_status=NodeStatus.PENDING,
        to_status=NodeStatus.RUNNING,
    )


def test_replace_graph_records_events_with_the_snapshot(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    store.replace_graph(
        "graph-1",
        _with_status(created, "plan", NodeStatus.RUNNING),
        if_match_graph_version=1,
        events=[_running_event("plan")],
    )

    events = store.get_events("graph-1")
    assert [(event.event_type, event.node_id) for event in events] == [
        ("graph_created", None),
        ("node_status", "plan"),
    ]
    assert events[1].to_status == NodeStatus.RUNNING


def test_conflicting_replace_records_no_events(store: GraphStore) -> None:
    created = store.create_graph(_graph())
    store.replace_graph(
        "graph-1",
        _with_status(created, "plan", NodeStatus.RUNNING),
        if_match_graph_version=1,
    )

    with pytest.raises(GraphVersionConflictError):
        store.replace_graph(
            "graph-1",
            _with_status(created, "plan", NodeStatus.FAILED),
            if_match_graph_version=1,
            events=[_running_event("plan")],
        )

    assert [event.event_type for event in store.get_events("graph-1")] == ["graph_created"]


def test_invalid_replace_records_no_events(store: GraphStore) -> None:
    created = store.create_graph(_graph())

    with pytest.raises(GraphValidationError):
        store.replace_graph(
            "graph-1",
            replace(created, nodes={}),
            if_match_graph_version=1,
            events=[_running_event("plan")],
        )

    assert [event.event_type for event in store.get_events("graph-1")] == ["graph_created"]


def test_naive_timestamps_are_stored_as_utc(store: GraphStore) -> None:
    naive = EVENT_TIME.replace(tzinfo=None)
    created = store.create_graph(replace(_graph(), created_at=naive))
    assert created.created_at == EVENT_TIME
    assert created.created_at.tzinfo is not None

    updated = store.replace_graph(
        "graph-1",
        replace(
            created.with_nodes(
                {"plan": replace(created.nodes["plan"], started_at=naive)},
            ),
            started_at=naive,
        ),
        if_match_graph_version=1,
    )

    assert updated.started_at == EVENT_TIME
    assert updated.nodes["plan"].started_at == EVENT_TIME
    stored = store.get_graph("graph-1")
    assert stored is not None
    assert stored.started_at is not None
    assert stored.started_at.tzinfo is not None
    assert stored.created_at == EVENT_TIME


def test_list_in_progress_graphs_skips_finished_graphs(store: GraphStore) -> None:
    first = store.create_graph(_graph("graph-a", "task-a"))
    store.create_graph(_graph("graph-b", "task-b"))
    finished = first.with_nodes(
        {
            "plan": replace(first.nodes["plan"], status=NodeStatus.DONE),
            "review": replace(first.nodes["review"], status=NodeStatus.DONE),
        },
    )
    store.replace_graph(
        "graph-a",
        replace(finished, status="completed", completed_at=EVENT_TIME),
        if_match_graph_version=1,
    )

    in_progress = store.list_in_progress_graphs()

    assert [graph.graph_id for graph in in_progress] == ["graph-b"]
    assert len(store.list_graphs()) == 2
    assert len(store.list_graphs(limit=1)) == 1


def test_in_memory_store_accepts_initial_graphs() -> None:
    store = InMemoryGraphStore([_graph("graph-a", "task-a"), _graph("graph-b", "task-b")])

    assert {graph.graph_id for graph in store.list_graphs()} == {"graph-a", "graph-b"}


def test_sqlite_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = SqliteGraphRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = set(inspect(connection).get_table_names())
    repository.close()

    assert version == "20261018_0001"
    assert {"execution_graphs", "execution_graph_versions", "graph_events"} <= tables


def test_sqlite_repositories_share_version_checks(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    writer_a = SqliteGraphRepository(db_path)
    writer_a.init_schema()
    writer_b = SqliteGraphRepository(db_path)
    try:
        created = writer_a.create_graph(_graph())
        read_by_b = writer_b.get_graph("graph-1")
        assert read_by_b == created

        writer_a.replace_graph(
            "graph-1",
            _with_status(created, "plan", NodeStatus.RUNNING),
            if_match_graph_version=1,
        )
        with pytest.raises(GraphVersionConflictError) as exc_info:
            writer_b.replace_graph(
                "graph-1",
                _with_status(read_by_b, "plan", NodeStatus.DONE),
                if_match_graph_version=read_by_b.graph_version,
            )
        assert exc_info.value.actual_version == 2
    finally:
        writer_a.close()
        writer_b.close()
