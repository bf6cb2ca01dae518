"""Controllers for graph CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskgraph.config import Settings
from taskgraph.graph.completion import count_statuses, is_graph_complete
from taskgraph.graph.executor import LoggingExecutor
from taskgraph.graph.gates import GateResolutionError, resolve_gate
from taskgraph.graph.models import ExecutionGraph, GraphEvent, NodeStatus
from taskgraph.graph.repository import SqliteGraphRepository
from taskgraph.graph.runtime import GraphRuntime, NodeStatusReportError
from taskgraph.graph.store import (
    GraphAlreadyExistsError,
    GraphNotFoundError,
    GraphVersionConflictError,
)
from taskgraph.graph.validation import GraphValidationError, graph_to_payload, load_graph_file

# Errors a CLI user can act on; anything else is a bug and keeps its traceback.
DOMAIN_ERRORS: tuple[type[Exception], ...] = (
    GraphValidationError,
    GraphAlreadyExistsError,
    GraphNotFoundError,
    GraphVersionConflictError,
    GateResolutionError,
    NodeStatusReportError,
    ValueError,
)


@dataclass(slots=True)
class GraphFileCommand:
    """CLI input for graph document validation and import."""

    db_path: Path | None
    file: Path


@dataclass(slots=True)
class GraphListCommand:
    db_path: Path | None
    limit: int = 50


@dataclass(slots=True)
class GraphShowCommand:
    """CLI input for graph inspection."""

    db_path: Path | None
    graph_id: str | None = None
    task_id: str | None = None
    version: int | None = None
    as_json: bool = False


@dataclass(slots=True)
class GraphTickCommand:
    db_path: Path | None
    graph_id: str
    allowed_node_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class GraphRunCommand:
    """CLI input for the runtime loop."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None
    max_idle_polls: int = 1


@dataclass(slots=True)
class GraphReportCommand:
    """CLI input for executor status write-back."""

    db_path: Path | None
    graph_id: str
    node_id: str
    status: str
    error: str | None = None


@dataclass(slots=True)
class GraphGateCommand:
    """CLI input for gate approval or rejection."""

    db_path: Path | None
    task_id: str
    approved: bool
    node_id: str | None = None
    feedback: str | None = None
    if_match_version: int | None = None


@dataclass(slots=True)
class GraphEventsCommand:
    db_path: Path | None
    graph_id: str
    limit: int = 100


class GraphCliController:
    """Coordinates graph import, scheduling, and inspection CLI operations."""

    def validate(self, command: GraphFileCommand) -> list[str]:
        settings = _settings(command.db_path)
        graph = _load(command.file, settings)
        return [
            "Graph valid: "
            f"id={graph.graph_id} task={graph.task_id} "
            f"nodes={len(graph.nodes)} edges={len(graph.edges)}",
        ]

    def import_graph(self, command: GraphFileCommand) -> list[str]:
        settings = _settings(command.db_path)
        graph = _load(command.file, settings)
        with _repository(settings) as repository:
            persisted = repository.create_graph(graph)
        return [
            "Graph imported: "
            f"id={persisted.graph_id} task={persisted.task_id} "
            f"version={persisted.graph_version} nodes={len(persisted.nodes)}",
        ]

    def list_graphs(self, command: GraphListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            graphs = repository.list_graphs(limit=command.limit)

        lines = [f"Graphs: {len(graphs)}"]
        for graph in graphs:
            lines.append(
                f"  {graph.graph_id} task={graph.task_id} version={graph.graph_version} "
                f"status={graph.status or '-'} {_status_summary(graph)}",
            )
        return lines

    def show(self, command: GraphShowCommand) -> list[str]:
        """Render one graph, optionally at a historical version."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            graph = _resolve_graph(repository, command.graph_id, command.task_id)
            if command.version is not None and command.version != graph.graph_version:
                historical = repository.get_graph_version(graph.graph_id, command.version)
                if historical is None:
                    raise GraphNotFoundError(
                        f"Graph {graph.graph_id} has no version {command.version}",
                    )
                graph = historical

        if command.as_json:
            payload = graph_to_payload(graph)
            return [json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)]

        lines = [
            f"Graph: {graph.graph_id}",
            f"Task: {graph.task_id}",
            f"Version: {graph.graph_version}",
            f"Mode: {graph.mode.value}",
            f"Status: {graph.status or '-'}",
            f"Complete: {'yes' if is_graph_complete(graph) else 'no'}",
            f"Max concurrent: {graph.policy.max_concurrent}",
            f"Nodes: {len(graph.nodes)} ({_status_summary(graph)})",
        ]
        for node_id in sorted(graph.nodes):
            node = graph.nodes[node_id]
            deps = ",".join(node.deps) or "-"
            lines.append(
                f"  {node_id} type={node.node_type.value} status={node.status.value} "
                f"deps={deps} error={node.error or '-'}",
            )
        for edge in graph.edges:
            lines.append(
                f"  edge {edge.from_node} -> {edge.to_node} "
                f"{edge.edge_type.value}/{edge.condition.value}",
            )
        return lines

    def tick(self, command: GraphTickCommand) -> list[str]:
        settings = _settings(command.db_path)
        allowed = frozenset(command.allowed_node_ids) if command.allowed_node_ids else None
        with _repository(settings) as repository:
            runtime = _runtime(repository, settings)
            outcome = runtime.tick_graph(command.graph_id, allowed_node_ids=allowed)
        if outcome is None:
            raise GraphNotFoundError(f"Graph not found: {command.graph_id}")

        dispatched = ",".join(event.node_id for event in outcome.dispatched) or "-"
        lines = [
            "Tick: "
            f"graph={command.graph_id} version={outcome.graph.graph_version} "
            f"persisted={'yes' if outcome.persisted else 'no'} dispatched={dispatched}",
        ]
        if outcome.timed_out:
            lines.append("Graph timed out; incomplete nodes marked failed.")
        elif outcome.graph.completed_at is not None:
            lines.append("Graph completed.")
        return lines

    def run(self, command: GraphRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        lines: list[str] = []
        with _repository(settings) as repository:
            runtime = _runtime(repository, settings)
            if command.once:
                summary = runtime.run_once()
            else:
                if settings.runtime.recover_on_start:
                    recovered = runtime.recover_in_progress_graphs()
                    lines.append(f"Recovered graphs: {recovered}")
                summary = runtime.run_loop(
                    max_cycles=command.max_cycles,
                    max_idle_polls=command.max_idle_polls,
                )

        lines.append(
            "Runtime summary: "
            f"cycles={summary.cycles} graphs_ticked={summary.graphs_ticked} "
            f"dispatched={summary.dispatched} completed={summary.completed} "
            f"timed_out={summary.timed_out} idle_polls={summary.idle_polls}",
        )
        return lines

    def report(self, command: GraphReportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = _runtime(repository, settings)
            graph = runtime.report_node_status(
                command.graph_id,
                command.node_id,
                command.status,
                error=command.error,
            )
        lines = [
            f"Node {command.node_id} -> {NodeStatus(command.status).value} "
            f"(graph={graph.graph_id} version={graph.graph_version})",
        ]
        if graph.completed_at is not None:
            lines.append("Graph completed.")
        return lines

    def resolve_gate(self, command: GraphGateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            resolution = resolve_gate(
                repository,
                task_id=command.task_id,
                node_id=command.node_id,
                approved=command.approved,
                if_match_graph_version=command.if_match_version,
                feedback=command.feedback,
            )
        verdict = "approved" if resolution.approved else "rejected"
        lines = [
            f"Gate {resolution.node_id} {verdict}: "
            f"version {resolution.previous_version} -> {resolution.graph_version}",
        ]
        if resolution.graph.completed_at is not None:
            lines.append("Graph completed.")
        return lines

    def events(self, command: GraphEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_graph(command.graph_id) is None:
                raise GraphNotFoundError(f"Graph not found: {command.graph_id}")
            events = repository.get_events(command.graph_id)

        shown = events[-command.limit :]
        lines = [f"Events: {len(events)}"]
        lines.extend(_format_event(event) for event in shown)
        return lines


def _format_event(event: GraphEvent) -> str:
    line = (
        f"  {event.timestamp.isoformat()} {event.event_type} {event.node_id or '-'} "
        f"{event.from_status.value if event.from_status else '-'} -> "
        f"{event.to_status.value if event.to_status else '-'}"
    )
    if event.reason:
        line += f" reason={event.reason}"
    return line


def _status_summary(graph: ExecutionGraph) -> str:
    counts = count_statuses(graph)
    return " ".join(f"{status.value}={count}" for status, count in counts.items())


def _resolve_graph(
    repository: SqliteGraphRepository,
    graph_id: str | None,
    task_id: str | None,
) -> ExecutionGraph:
    if graph_id is not None:
        graph = repository.get_graph(graph_id)
    elif task_id is not None:
        graph = repository.get_graph_for_task(task_id)
    else:
        raise ValueError("Pass --graph-id or --task-id.")
    if graph is None:
        raise GraphNotFoundError(f"Graph not found: {graph_id or task_id}")
    return graph


def _load(path: Path, settings: Settings) -> ExecutionGraph:
    return load_graph_file(path, policy_defaults=settings.policy_defaults.to_policy())


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _runtime(repository: SqliteGraphRepository, settings: Settings) -> GraphRuntime:
    return GraphRuntime(
        store=repository,
        executor=LoggingExecutor(),
        max_conflict_retries=settings.runtime.max_conflict_retries,
        conflict_retry_delay_seconds=settings.runtime.conflict_retry_delay_seconds,
        poll_interval_seconds=settings.runtime.poll_interval_seconds,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[SqliteGraphRepository]:
    repository = SqliteGraphRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.runtime.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
