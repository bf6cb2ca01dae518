"""SQLite-backed ``GraphStore`` built on SQLModel sessions."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskgraph.graph.completion import is_graph_in_progress
from taskgraph.graph.models import ExecutionGraph, GraphEvent, GraphMode, NodeStatus
from taskgraph.graph.store import (
    GraphAlreadyExistsError,
    GraphNotFoundError,
    GraphVersionConflictError,
    graph_created_event,
    prepare_created_graph,
    prepare_replacement,
)
from taskgraph.graph.validation import graph_from_payload, graph_to_payload
from taskgraph.storage.alembic_runner import upgrade_head
from taskgraph.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskgraph.storage.sqlmodel_models import (
    ExecutionGraphRecord,
    ExecutionGraphVersionRecord,
    GraphEventRecord,
)


class SqliteGraphRepository:
    """Graph persistence facade backed by SQLModel + SQLite.

    The current snapshot lives in ``execution_graphs``; every accepted
    version is also copied to ``execution_graph_versions`` so earlier
    snapshots stay readable. Version checks run inside the ``UPDATE``
    statement, so concurrent writers are serialized by SQLite itself.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_graph(self, graph: ExecutionGraph) -> ExecutionGraph:
        """Insert a new graph together with its first version snapshot."""

        persisted = prepare_created_graph(graph, now=utc_now())
        payload_json = _dump_graph(persisted)
        with Session(self.engine) as session:
            if session.get(ExecutionGraphRecord, persisted.graph_id) is not None:
                raise GraphAlreadyExistsError(f"Graph already exists: {persisted.graph_id}")
            existing_task = session.exec(
                select(ExecutionGraphRecord).where(
                    ExecutionGraphRecord.task_id == persisted.task_id,
                ),
            ).one_or_none()
            if existing_task is not None:
                raise GraphAlreadyExistsError(f"Task already has a graph: {persisted.task_id}")

            session.add(_to_graph_record(persisted, payload_json))
            # Parent row first so the version and event foreign keys resolve.
            session.flush()
            session.add(_to_version_record(persisted, payload_json))
            self._add_event(session=session, event=graph_created_event(persisted))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise GraphAlreadyExistsError(
                    f"Graph or task already exists: {persisted.graph_id}",
                ) from exc
        return persisted

    def get_graph(self, graph_id: str) -> ExecutionGraph | None:
        with Session(self.engine) as session:
            row = session.get(ExecutionGraphRecord, graph_id)
            return _load_graph(row.payload_json) if row is not None else None

    def get_graph_for_task(self, task_id: str) -> ExecutionGraph | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionGraphRecord).where(ExecutionGraphRecord.task_id == task_id),
            ).one_or_none()
            return _load_graph(row.payload_json) if row is not None else None

    def get_graph_version(self, graph_id: str, version: int) -> ExecutionGraph | None:
        """Read a historical snapshot."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionGraphVersionRecord).where(
                    ExecutionGraphVersionRecord.graph_id == graph_id,
                    ExecutionGraphVersionRecord.graph_version == version,
                ),
            ).one_or_none()
            return _load_graph(row.payload_json) if row is not None else None

    def list_graphs(self, *, limit: int = 50) -> list[ExecutionGraph]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionGraphRecord)
                .order_by(
                    col(ExecutionGraphRecord.created_at).desc(),
                    col(ExecutionGraphRecord.graph_id).desc(),
                )
                .limit(limit),
            ).all()
            return [_load_graph(row.payload_json) for row in rows]

    def list_in_progress_graphs(self) -> list[ExecutionGraph]:
        """Graphs that are neither completed nor timed out and still have open nodes."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionGraphRecord)
                .where(
                    col(ExecutionGraphRecord.completed_at).is_(None),
                    col(ExecutionGraphRecord.timed_out_at).is_(None),
                )
                .order_by(col(ExecutionGraphRecord.graph_id).asc()),
            ).all()
            graphs = [_load_graph(row.payload_json) for row in rows]
        return [graph for graph in graphs if is_graph_in_progress(graph)]

    def replace_graph(
        self,
        graph_id: str,
        next_graph: ExecutionGraph,
        *,
        if_match_graph_version: int,
        events: Iterable[GraphEvent] = (),
    ) -> ExecutionGraph:
        """Compare-and-swap the stored snapshot, bumping its version by one.

        ``events`` are committed in the same transaction, so a lost race
        records none of them.
        """

        with Session(self.engine) as session:
            row = session.get(ExecutionGraphRecord, graph_id)
            if row is None:
                raise GraphNotFoundError(f"Graph not found: {graph_id}")
            if row.graph_version != if_match_graph_version:
                raise GraphVersionConflictError(
                    graph_id,
                    expected_version=if_match_graph_version,
                    actual_version=row.graph_version,
                )

            current = _load_graph(row.payload_json)
            persisted = prepare_replacement(current, next_graph, now=utc_now())
            payload_json = _dump_graph(persisted)
            result = session.exec(
                sa_update(ExecutionGraphRecord)
                .where(
                    col(ExecutionGraphRecord.graph_id) == graph_id,
                    col(ExecutionGraphRecord.graph_version) == if_match_graph_version,
                )
                .values(
                    graph_version=persisted.graph_version,
                    mode=GraphMode(persisted.mode).value,
                    status=persisted.status,
                    payload_json=payload_json,
                    updated_at=_optional_db_datetime(persisted.updated_at),
                    completed_at=_optional_db_datetime(persisted.completed_at),
                    timed_out_at=_optional_db_datetime(persisted.timed_out_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise GraphVersionConflictError(
                    graph_id,
                    expected_version=if_match_graph_version,
                    actual_version=self._current_version(graph_id),
                )
            session.add(_to_version_record(persisted, payload_json))
            for event in events:
                self._add_event(session=session, event=event)
            session.commit()
        return persisted

    def append_events(self, graph_id: str, events: Iterable[GraphEvent]) -> None:
        with Session(self.engine) as session:
            if session.get(ExecutionGraphRecord, graph_id) is None:
                raise GraphNotFoundError(f"Graph not found: {graph_id}")
            for event in events:
                self._add_event(session=session, event=event)
            session.commit()

    def get_events(self, graph_id: str) -> list[GraphEvent]:
        """Audit trail for one graph in insertion order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GraphEventRecord)
                .where(GraphEventRecord.graph_id == graph_id)
                .order_by(col(GraphEventRecord.id).asc()),
            ).all()
            return [_to_graph_event(row) for row in rows]

    def _current_version(self, graph_id: str) -> int:
        with Session(self.engine) as session:
            row = session.get(ExecutionGraphRecord, graph_id)
            if row is None:
                raise GraphNotFoundError(f"Graph not found: {graph_id}")
            return row.graph_version

    def _add_event(self, *, session: Session, event: GraphEvent) -> None:
        session.add(
            GraphEventRecord(
                graph_id=event.graph_id,
                event_type=event.event_type,
                node_id=event.node_id,
                status_from=(
                    NodeStatus(event.from_status).value if event.from_status is not None else None
                ),
                status_to=(
                    NodeStatus(event.to_status).value if event.to_status is not None else None
                ),
                reason=event.reason,
                details_json=json.dumps(event.details, ensure_ascii=False, sort_keys=True)
                if event.details
                else None,
                created_at=to_db_datetime(event.timestamp),
            ),
        )


def _dump_graph(graph: ExecutionGraph) -> str:
    return json.dumps(graph_to_payload(graph), ensure_ascii=False, sort_keys=True)


def _load_graph(payload_json: str) -> ExecutionGraph:
    return graph_from_payload(json.loads(payload_json))


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _to_graph_record(graph: ExecutionGraph, payload_json: str) -> ExecutionGraphRecord:
    created_at = graph.created_at or utc_now()
    return ExecutionGraphRecord(
        graph_id=graph.graph_id,
        task_id=graph.task_id,
        graph_version=graph.graph_version,
        mode=GraphMode(graph.mode).value,
        status=graph.status,
        payload_json=payload_json,
        created_at=to_db_datetime(created_at),
        updated_at=to_db_datetime(graph.updated_at or created_at),
        completed_at=_optional_db_datetime(graph.completed_at),
        timed_out_at=_optional_db_datetime(graph.timed_out_at),
    )


def _to_version_record(graph: ExecutionGraph, payload_json: str) -> ExecutionGraphVersionRecord:
    return ExecutionGraphVersionRecord(
        graph_id=graph.graph_id,
        graph_version=graph.graph_version,
        payload_json=payload_json,
        created_at=to_db_datetime(graph.updated_at or utc_now()),
    )


def _to_graph_event(row: GraphEventRecord) -> GraphEvent:
    return GraphEvent(
        event_type=row.event_type,
        graph_id=row.graph_id,
        timestamp=to_utc_aware_datetime(row.created_at),
        node_id=row.node_id,
        from_status=NodeStatus(row.status_from) if row.status_from is not None else None,
        to_status=NodeStatus(row.status_to) if row.status_to is not None else None,
        reason=row.reason,
        details=json.loads(row.details_json) if row.details_json else {},
    )
