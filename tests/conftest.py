"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from taskgraph.graph.repository import SqliteGraphRepository
from taskgraph.graph.store import InMemoryGraphStore

FIXED_NOW = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)


@pytest.fixture()
def memory_store() -> InMemoryGraphStore:
    return InMemoryGraphStore(now=lambda: FIXED_NOW)


@pytest.fixture()
def sqlite_repository(tmp_path: Path) -> Iterator[SqliteGraphRepository]:
    repository = SqliteGraphRepository(tmp_path / "graphs.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def graph_document(tmp_path: Path) -> Path:
    """A review pipeline: build -> test -> human review gate -> release."""

    path = tmp_path / "graph.json"
    path.write_text(
        json.dumps(
            {
                "id": "graph-review",
                "taskId": "task-review",
                "mode": "PROJECT",
                "policy": {"maxConcurrent": 2},
                "nodes": {
                    "build": {"type": "work", "title": "Build"},
                    "test": {"type": "work", "deps": ["build"]},
                    "review": {"type": "gate", "deps": ["test"]},
                    "release": {"type": "work"},
                },
                "edges": [
                    {"from": "review", "to": "release", "type": "hard", "condition": "on_success"},
                ],
                "doneCriteria": {"completionSinkNodeIds": ["release"]},
            },
        ),
        "utf-8",
    )
    return path
