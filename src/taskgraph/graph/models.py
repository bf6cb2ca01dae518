"""Domain models for execution graphs, scheduler ticks, and audit events."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    """Kinds of graph nodes. Only work nodes consume concurrency budget."""

    WORK = "work"
    GATE = "gate"


class NodeStatus(str, Enum):
    """Node lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"
    AWAITING_HUMAN = "awaiting_human"


class EdgeType(str, Enum):
    """Hard edges gate dispatch; soft edges are ordering hints only."""

    HARD = "hard"
    SOFT = "soft"


class EdgeCondition(str, Enum):
    """Upstream outcome a hard edge waits for."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


class GraphMode(str, Enum):
    """Coarse execution mode of the surrounding orchestration."""

    SIMPLE = "SIMPLE"
    PROJECT = "PROJECT"


TERMINAL_NODE_STATUSES = frozenset({NodeStatus.DONE, NodeStatus.FAILED})
INCOMPLETE_NODE_STATUSES = frozenset(
    {
        NodeStatus.PENDING,
        NodeStatus.RUNNING,
        NodeStatus.AWAITING_HUMAN,
        NodeStatus.BLOCKED,
    },
)
REPORTABLE_NODE_STATUSES = frozenset(
    {
        NodeStatus.DONE,
        NodeStatus.FAILED,
        NodeStatus.BLOCKED,
        NodeStatus.AWAITING_HUMAN,
    },
)

GRAPH_STATUS_COMPLETED = "completed"
GRAPH_STATUS_TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class Node:
    """One unit of work or gate inside an execution graph."""

    node_id: str
    node_type: NodeType
    status: NodeStatus = NodeStatus.PENDING
    deps: tuple[str, ...] = ()
    title: str | None = None
    required: bool = True
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    feedback: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES


@dataclass(frozen=True, slots=True)
class Edge:
    """Directed dependency between two nodes."""

    from_node: str
    to_node: str
    edge_type: EdgeType = EdgeType.HARD
    condition: EdgeCondition = EdgeCondition.ON_SUCCESS


@dataclass(frozen=True, slots=True)
class ExecutionPolicy:
    """Admission and timeout policy attached to a graph."""

    max_concurrent: int = 3
    node_timeout_seconds: int = 1_800
    graph_timeout_seconds: int = 86_400


@dataclass(frozen=True, slots=True)
class DoneCriteria:
    """Completion criteria consulted by the graph completion check."""

    all_required_gates_passed: bool = True
    no_runnable_or_pending_work: bool = True
    completion_sink_node_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExecutionGraph:
    """Snapshot of one task's execution plan.

    Values are never mutated in place; every change produces a new snapshot
    via ``dataclasses.replace``. ``nodes`` is keyed by node id.
    """

    graph_id: str
    task_id: str
    nodes: Mapping[str, Node]
    edges: tuple[Edge, ...] = ()
    graph_version: int = 1
    mode: GraphMode = GraphMode.PROJECT
    policy: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    done_criteria: DoneCriteria = field(default_factory=DoneCriteria)
    status: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    timed_out_at: datetime | None = None

    def with_nodes(self, updates: Mapping[str, Node]) -> ExecutionGraph:
        """Return a copy with the given nodes replaced."""

        return replace(self, nodes={**self.nodes, **updates})


@dataclass(frozen=True, slots=True)
class TickOptions:
    """Per-invocation scheduler input."""

    now: datetime
    allowed_node_ids: frozenset[str] | None = None


@dataclass(frozen=True, slots=True)
class DispatchEvent:
    """A node admitted from pending to running by one tick."""

    node_id: str
    node_type: NodeType
    timestamp: datetime
    from_status: NodeStatus = NodeStatus.PENDING
    to_status: NodeStatus = NodeStatus.RUNNING
    reason: str = "deps_satisfied"
    event_type: str = "node_status"


@dataclass(frozen=True, slots=True)
class TickResult:
    """Scheduler output: next snapshot plus dispatch events in order."""

    graph: ExecutionGraph
    events: list[DispatchEvent]


@dataclass(frozen=True, slots=True)
class GraphEvent:
    """Audit trail entry persisted alongside graph versions."""

    event_type: str
    graph_id: str
    timestamp: datetime
    node_id: str | None = None
    from_status: NodeStatus | None = None
    to_status: NodeStatus | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
