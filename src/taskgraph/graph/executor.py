"""Boundary between the scheduler runtime and whatever actually runs nodes."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from taskgraph.graph.models import ExecutionGraph, Node, NodeType

logger = logging.getLogger(__name__)


class NodeExecutor(Protocol):
    """Receives nodes the scheduler has just moved to ``running``.

    Implementations must not block for the duration of the work; results
    come back later through ``GraphRuntime.report_node_status``.
    """

    def start(self, node: Node, graph: ExecutionGraph) -> None: ...


class LoggingExecutor:
    """Executor that only records dispatches; the work itself runs elsewhere."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started: list[tuple[str, str]] = []

    def start(self, node: Node, graph: ExecutionGraph) -> None:
        with self._lock:
            self.started.append((graph.graph_id, node.node_id))
        logger.info(
            "Dispatched %s node %s of graph %s",
            NodeType(node.node_type).value,
            node.node_id,
            graph.graph_id,
        )
