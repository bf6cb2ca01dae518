"""Versioned graph storage contract and in-memory implementation.

Every write after creation goes through ``replace_graph`` with the version
the writer read (``if_match_graph_version``). The store bumps the version by
exactly one per successful write, so two writers that read the same version
cannot both succeed. Events passed to ``replace_graph`` are recorded with the
snapshot they describe, or not at all.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from taskgraph.graph.completion import is_graph_in_progress
from taskgraph.graph.models import ExecutionGraph, GraphEvent
from taskgraph.graph.validation import validate_graph
from taskgraph.storage.common import to_iso, to_utc_aware_datetime, utc_now

GRAPH_VERSION_CONFLICT = "GRAPH_VERSION_CONFLICT"


class GraphVersionConflictError(RuntimeError):
    """Raised when a write was based on a stale graph version."""

    code = GRAPH_VERSION_CONFLICT

    def __init__(self, graph_id: str, *, expected_version: int, actual_version: int) -> None:
        self.graph_id = graph_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Graph {graph_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version}); "
            "re-read the graph and retry.",
        )


class GraphNotFoundError(LookupError):
    """Raised when a graph id or task id is unknown."""


class GraphAlreadyExistsError(ValueError):
    """Raised when creating a graph whose id or task already has one."""


class GraphStore(Protocol):
    """Persistence contract consumed by the runtime and gate resolution."""

    def create_graph(self, graph: ExecutionGraph) -> ExecutionGraph: ...

    def get_graph(self, graph_id: str) -> ExecutionGraph | None: ...

    def get_graph_for_task(self, task_id: str) -> ExecutionGraph | None: ...

    def get_graph_version(self, graph_id: str, version: int) -> ExecutionGraph | None: ...

    def list_graphs(self, *, limit: int = 50) -> list[ExecutionGraph]: ...

    def list_in_progress_graphs(self) -> list[ExecutionGraph]: ...

    def replace_graph(
        self,
        graph_id: str,
        next_graph: ExecutionGraph,
        *,
        if_match_graph_version: int,
        events: Iterable[GraphEvent] = (),
    ) -> ExecutionGraph: ...

    def append_events(self, graph_id: str, events: Iterable[GraphEvent]) -> None: ...

    def get_events(self, graph_id: str) -> list[GraphEvent]: ...


def prepare_created_graph(graph: ExecutionGraph, *, now: datetime) -> ExecutionGraph:
    """Validate a new graph and stamp creation metadata."""

    validate_graph(graph)
    return normalize_timestamps(
        replace(
            graph,
            created_at=graph.created_at or now,
            updated_at=now,
        ),
    )


def prepare_replacement(
    current: ExecutionGraph,
    next_graph: ExecutionGraph,
    *,
    now: datetime,
) -> ExecutionGraph:
    """Pin identity fields and bump the version for a replacement write."""

    persisted = replace(
        next_graph,
        graph_id=current.graph_id,
        task_id=current.task_id,
        graph_version=current.graph_version + 1,
        created_at=current.created_at,
        updated_at=now,
    )
    validate_graph(persisted)
    return normalize_timestamps(persisted)


def normalize_timestamps(graph: ExecutionGraph) -> ExecutionGraph:
    """Store every graph and node timestamp as timezone-aware UTC.

    Naive values are taken to be UTC already.
    """

    nodes = {
        node_id: replace(
            node,
            started_at=_utc(node.started_at),
            completed_at=_utc(node.completed_at),
        )
        for node_id, node in graph.nodes.items()
    }
    return replace(
        graph,
        nodes=nodes,
        created_at=_utc(graph.created_at),
        updated_at=_utc(graph.updated_at),
        started_at=_utc(graph.started_at),
        completed_at=_utc(graph.completed_at),
        timed_out_at=_utc(graph.timed_out_at),
    )


def _utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def graph_created_event(graph: ExecutionGraph) -> GraphEvent:
    return GraphEvent(
        event_type="graph_created",
        graph_id=graph.graph_id,
        timestamp=graph.created_at or utc_now(),
        details={"task_id": graph.task_id, "graph_version": graph.graph_version},
    )


class InMemoryGraphStore:
    """Thread-safe in-process ``GraphStore``."""

    def __init__(
        self,
        graphs: Iterable[ExecutionGraph] = (),
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._now = now
        self._lock = threading.Lock()
        self._graphs: dict[str, ExecutionGraph] = {}
        self._versions: dict[str, dict[int, ExecutionGraph]] = {}
        self._events: dict[str, list[GraphEvent]] = {}
        for graph in graphs:
            self.create_graph(graph)

    def create_graph(self, graph: ExecutionGraph) -> ExecutionGraph:
        persisted = prepare_created_graph(graph, now=self._now())
        with self._lock:
            if persisted.graph_id in self._graphs:
                raise GraphAlreadyExistsError(f"Graph already exists: {persisted.graph_id}")
            if any(item.task_id == persisted.task_id for item in self._graphs.values()):
                raise GraphAlreadyExistsError(f"Task already has a graph: {persisted.task_id}")
            self._graphs[persisted.graph_id] = persisted
            self._versions[persisted.graph_id] = {persisted.graph_version: persisted}
            self._events[persisted.graph_id] = [graph_created_event(persisted)]
        return persisted

    def get_graph(self, graph_id: str) -> ExecutionGraph | None:
        with self._lock:
            return self._graphs.get(graph_id)

    def get_graph_for_task(self, task_id: str) -> ExecutionGraph | None:
        with self._lock:
            for graph in self._graphs.values():
                if graph.task_id == task_id:
                    return graph
        return None

    def get_graph_version(self, graph_id: str, version: int) -> ExecutionGraph | None:
        with self._lock:
            return self._versions.get(graph_id, {}).get(version)

    def list_graphs(self, *, limit: int = 50) -> list[ExecutionGraph]:
        with self._lock:
            graphs = list(self._graphs.values())
        graphs.sort(
            key=lambda graph: (to_iso(graph.created_at) or "", graph.graph_id),
            reverse=True,
        )
        return graphs[:limit]

    def list_in_progress_graphs(self) -> list[ExecutionGraph]:
        with self._lock:
            graphs = list(self._graphs.values())
        return sorted(
            (graph for graph in graphs if is_graph_in_progress(graph)),
            key=lambda graph: graph.graph_id,
        )

    def replace_graph(
        self,
        graph_id: str,
        next_graph: ExecutionGraph,
        *,
        if_match_graph_version: int,
        events: Iterable[GraphEvent] = (),
    ) -> ExecutionGraph:
        with self._lock:
            current = self._graphs.get(graph_id)
            if current is None:
                raise GraphNotFoundError(f"Graph not found: {graph_id}")
            if current.graph_version != if_match_graph_version:
                raise GraphVersionConflictError(
                    graph_id,
                    expected_version=if_match_graph_version,
                    actual_version=current.graph_version,
                )
            persisted = prepare_replacement(current, next_graph, now=self._now())
            self._graphs[graph_id] = persisted
            self._versions[graph_id][persisted.graph_version] = persisted
            self._events[graph_id].extend(events)
            return persisted

    def append_events(self, graph_id: str, events: Iterable[GraphEvent]) -> None:
        with self._lock:
            if graph_id not in self._graphs:
                raise GraphNotFoundError(f"Graph not found: {graph_id}")
            self._events[graph_id].extend(events)

    def get_events(self, graph_id: str) -> list[GraphEvent]:
        with self._lock:
            return list(self._events.get(graph_id, []))
