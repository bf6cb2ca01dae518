"""Runtime loop that drives graphs through the scheduler and the store."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TypeVar

from taskgraph.graph.completion import is_graph_in_progress, with_completion
from taskgraph.graph.executor import NodeExecutor
from taskgraph.graph.models import (
    GRAPH_STATUS_TIMED_OUT,
    INCOMPLETE_NODE_STATUSES,
    REPORTABLE_NODE_STATUSES,
    TERMINAL_NODE_STATUSES,
    DispatchEvent,
    ExecutionGraph,
    GraphEvent,
    Node,
    NodeStatus,
    NodeType,
    TickOptions,
    TickResult,
)
from taskgraph.graph.scheduler import tick
from taskgraph.graph.store import GraphNotFoundError, GraphStore, GraphVersionConflictError
from taskgraph.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

GRAPH_TIMEOUT_ERROR = "graph_timeout"

Scheduler = Callable[[ExecutionGraph, TickOptions], TickResult]
_T = TypeVar("_T")


class NodeStatusReportError(ValueError):
    """Raised when an executor reports a status the node cannot take."""


@dataclass(slots=True)
class TickOutcome:
    """Result of one runtime tick for a single graph."""

    graph: ExecutionGraph
    dispatched: list[DispatchEvent] = field(default_factory=list)
    persisted: bool = False
    timed_out: bool = False
    attempts: int = 1


@dataclass(slots=True)
class RuntimeRunSummary:
    """Aggregate runtime counters for CLI reporting."""

    cycles: int = 0
    graphs_ticked: int = 0
    dispatched: int = 0
    timed_out: int = 0
    completed: int = 0
    idle_polls: int = 0


def enforce_graph_timeout(graph: ExecutionGraph, now: datetime) -> ExecutionGraph:
    """Fail every incomplete node once the graph outlived its timeout.

    Returns the input object unchanged when the timeout has not elapsed.
    """

    if graph.timed_out_at is not None or graph.completed_at is not None:
        return graph
    anchor = graph.started_at or graph.created_at
    if anchor is None:
        return graph
    # Naive stamps count as UTC.
    now = to_utc_aware_datetime(now)
    elapsed = now - to_utc_aware_datetime(anchor)
    if elapsed < timedelta(seconds=graph.policy.graph_timeout_seconds):
        return graph

    updates = {
        node_id: replace(
            node,
            status=NodeStatus.FAILED,
            completed_at=node.completed_at or now,
            error=node.error or GRAPH_TIMEOUT_ERROR,
        )
        for node_id, node in graph.nodes.items()
        if node.status in INCOMPLETE_NODE_STATUSES
    }
    return replace(
        graph.with_nodes(updates),
        status=GRAPH_STATUS_TIMED_OUT,
        timed_out_at=now,
        completed_at=now,
    )


def derive_node_status_events(
    before: ExecutionGraph,
    after: ExecutionGraph,
    timestamp: datetime,
    *,
    reason: str | None = None,
    reasons: Mapping[str, str] | None = None,
) -> list[GraphEvent]:
    """One ``node_status`` event per node whose status changed, by node id."""

    events: list[GraphEvent] = []
    for node_id in sorted(after.nodes):
        previous = before.nodes.get(node_id)
        current = after.nodes[node_id]
        if previous is not None and previous.status == current.status:
            continue
        events.append(
            GraphEvent(
                event_type="node_status",
                graph_id=after.graph_id,
                timestamp=timestamp,
                node_id=node_id,
                from_status=previous.status if previous is not None else None,
                to_status=current.status,
                reason=(reasons or {}).get(node_id, reason),
            ),
        )
    return events


def _graph_lifecycle_events(
    before: ExecutionGraph,
    after: ExecutionGraph,
    timestamp: datetime,
) -> list[GraphEvent]:
    events: list[GraphEvent] = []
    if before.started_at is None and after.started_at is not None:
        events.append(GraphEvent("graph_started", after.graph_id, timestamp))
    if before.timed_out_at is None and after.timed_out_at is not None:
        events.append(
            GraphEvent(
                "graph_timed_out",
                after.graph_id,
                timestamp,
                details={"graph_timeout_seconds": after.policy.graph_timeout_seconds},
            ),
        )
    elif before.completed_at is None and after.completed_at is not None:
        events.append(GraphEvent("graph_completed", after.graph_id, timestamp))
    return events


class GraphRuntime:
    """Reads graphs, runs the scheduler, persists, and hands dispatches to an executor.

    Every write is a compare-and-swap on ``graph_version``. A lost race is
    retried from a fresh read; the executor only sees nodes whose transition
    to ``running`` was actually stored.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: GraphStore,
        executor: NodeExecutor,
        scheduler: Scheduler = tick,
        max_conflict_retries: int = 3,
        conflict_retry_delay_seconds: float = 0.05,
        poll_interval_seconds: float = 2.0,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.executor = executor
        self.scheduler = scheduler
        self.max_conflict_retries = max(0, max_conflict_retries)
        self.conflict_retry_delay_seconds = max(0.0, conflict_retry_delay_seconds)
        self.poll_interval_seconds = poll_interval_seconds
        self._now = now
        self._sleep = sleep
        self._stop_requested = False

    def tick_graph(
        self,
        graph_id: str,
        *,
        allowed_node_ids: frozenset[str] | None = None,
    ) -> TickOutcome | None:
        """Run one scheduling round for a graph; ``None`` when the graph is unknown."""

        return self._with_conflict_retry(
            graph_id,
            lambda attempt: self._tick_graph_once(
                graph_id,
                allowed_node_ids=allowed_node_ids,
                attempt=attempt,
            ),
        )

    def report_node_status(
        self,
        graph_id: str,
        node_id: str,
        status: NodeStatus | str,
        *,
        error: str | None = None,
    ) -> ExecutionGraph:
        """Record the outcome of a running node and complete the graph when possible."""

        try:
            target = NodeStatus(status)
        except ValueError as exc:
            raise NodeStatusReportError(f"Unknown node status: {status}") from exc
        if target not in REPORTABLE_NODE_STATUSES:
            allowed = ", ".join(sorted(item.value for item in REPORTABLE_NODE_STATUSES))
            raise NodeStatusReportError(
                f"Cannot report status {target.value}; expected one of: {allowed}",
            )

        return self._with_conflict_retry(
            graph_id,
            lambda _attempt: self._report_once(graph_id, node_id, target, error=error),
        )

    def recover_in_progress_graphs(self) -> int:
        """Tick every graph a previous process left in progress."""

        summary = self.run_once()
        if summary.graphs_ticked:
            logger.info(
                "Recovered %d in-progress graph(s), dispatched %d node(s)",
                summary.graphs_ticked,
                summary.dispatched,
            )
        return summary.graphs_ticked

    def run_once(self) -> RuntimeRunSummary:
        """Tick each in-progress graph once."""

        summary = RuntimeRunSummary(cycles=1)
        for graph in self.store.list_in_progress_graphs():
            if self._stop_requested:
                break
            outcome = self.tick_graph(graph.graph_id)
            if outcome is None:
                continue
            summary.graphs_ticked += 1
            summary.dispatched += len(outcome.dispatched)
            if outcome.timed_out:
                summary.timed_out += 1
            elif outcome.persisted and outcome.graph.completed_at is not None:
                summary.completed += 1
        if summary.dispatched == 0 and summary.timed_out == 0 and summary.completed == 0:
            summary.idle_polls = 1
        return summary

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        max_idle_polls: int = 1,
    ) -> RuntimeRunSummary:
        """Tick in-progress graphs until idle, a cycle cap, or a stop signal.

        Args:
            max_cycles: Stop after this many passes (None = unlimited).
            max_idle_polls: How many consecutive passes without progress
                before exiting. Raise it when executors report results
                asynchronously and the loop should wait for them.
        """

        aggregate = RuntimeRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    return aggregate

                summary = self.run_once()
                aggregate.cycles += summary.cycles
                aggregate.graphs_ticked += summary.graphs_ticked
                aggregate.dispatched += summary.dispatched
                aggregate.timed_out += summary.timed_out
                aggregate.completed += summary.completed
                aggregate.idle_polls += summary.idle_polls

                if summary.idle_polls:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _with_conflict_retry(self, graph_id: str, operation: Callable[[int], _T]) -> _T:
        attempt = 1
        while True:
            try:
                return operation(attempt)
            except GraphVersionConflictError as exc:
                if attempt > self.max_conflict_retries:
                    logger.error(
                        "Giving up on graph %s after %d conflicting write(s)",
                        graph_id,
                        attempt,
                    )
                    raise
                logger.warning(
                    "Version conflict on graph %s (expected %d, found %d); retry %d/%d",
                    graph_id,
                    exc.expected_version,
                    exc.actual_version,
                    attempt,
                    self.max_conflict_retries,
                )
                if self.conflict_retry_delay_seconds > 0:
                    self._sleep(self.conflict_retry_delay_seconds * attempt)
                attempt += 1

    def _tick_graph_once(
        self,
        graph_id: str,
        *,
        allowed_node_ids: frozenset[str] | None,
        attempt: int,
    ) -> TickOutcome | None:
        graph = self.store.get_graph(graph_id)
        if graph is None:
            return None
        if graph.completed_at is not None or graph.timed_out_at is not None:
            return TickOutcome(graph=graph, attempts=attempt)

        now = self._now()
        dispatched: list[DispatchEvent] = []
        next_graph = enforce_graph_timeout(graph, now)
        timed_out = next_graph is not graph
        if not timed_out:
            result = self.scheduler(
                graph,
                TickOptions(now=now, allowed_node_ids=allowed_node_ids),
            )
            dispatched = list(result.events)
            next_graph = with_completion(_stamp_started(result.graph, dispatched, now), now)

        if next_graph is graph:
            return TickOutcome(graph=graph, attempts=attempt)

        events = derive_node_status_events(
            graph,
            next_graph,
            now,
            reason=GRAPH_TIMEOUT_ERROR if timed_out else None,
            reasons={event.node_id: event.reason for event in dispatched},
        )
        events.extend(_graph_lifecycle_events(graph, next_graph, now))
        persisted = self.store.replace_graph(
            graph_id,
            next_graph,
            if_match_graph_version=graph.graph_version,
            events=events,
        )

        if timed_out:
            logger.warning(
                "Graph %s timed out after %d seconds",
                graph_id,
                graph.policy.graph_timeout_seconds,
            )
        for event in dispatched:
            self.executor.start(persisted.nodes[event.node_id], persisted)
        if dispatched:
            logger.info(
                "Graph %s v%d: dispatched %s",
                graph_id,
                persisted.graph_version,
                ", ".join(event.node_id for event in dispatched),
            )
        return TickOutcome(
            graph=persisted,
            dispatched=dispatched,
            persisted=True,
            timed_out=timed_out,
            attempts=attempt,
        )

    def _report_once(
        self,
        graph_id: str,
        node_id: str,
        status: NodeStatus,
        *,
        error: str | None,
    ) -> ExecutionGraph:
        graph = self.store.get_graph(graph_id)
        if graph is None:
            raise GraphNotFoundError(f"Graph not found: {graph_id}")
        node = graph.nodes.get(node_id)
        if node is None:
            raise NodeStatusReportError(f"Node {node_id} not found in graph {graph_id}")
        if node.status != NodeStatus.RUNNING:
            raise NodeStatusReportError(
                f"Node {node_id} is {NodeStatus(node.status).value}, only running nodes "
                "accept a status report",
            )
        if status == NodeStatus.AWAITING_HUMAN and node.node_type != NodeType.GATE:
            raise NodeStatusReportError(f"Only gates can await a human decision: {node_id}")

        now = self._now()
        updated = replace(
            node,
            status=status,
            error=error,
            completed_at=now if status in TERMINAL_NODE_STATUSES else node.completed_at,
        )
        next_graph = with_completion(graph.with_nodes({node_id: updated}), now)
        events = derive_node_status_events(graph, next_graph, now, reason="reported")
        events.extend(_graph_lifecycle_events(graph, next_graph, now))
        persisted = self.store.replace_graph(
            graph_id,
            next_graph,
            if_match_graph_version=graph.graph_version,
            events=events,
        )
        logger.info(
            "Node %s of graph %s reported %s (v%d)",
            node_id,
            graph_id,
            status.value,
            persisted.graph_version,
        )
        return persisted

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            self._sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current graph", name)
            self.request_stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _stamp_started(
    graph: ExecutionGraph,
    dispatched: list[DispatchEvent],
    now: datetime,
) -> ExecutionGraph:
    if not dispatched:
        return graph
    updates: dict[str, Node] = {}
    for event in dispatched:
        node = graph.nodes[event.node_id]
        updates[event.node_id] = replace(node, started_at=node.started_at or now)
    stamped = graph.with_nodes(updates)
    if stamped.started_at is None:
        stamped = replace(stamped, started_at=now)
    return stamped
