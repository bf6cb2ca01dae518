from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from taskgraph.main import taskgraph

pytestmark = [
    allure.epic("Execution Graph"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKGRAPH_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("TASKGRAPH_CONFLICT_RETRY_DELAY_SECONDS", "0")
    monkeypatch.delenv("TASKGRAPH_DB_PATH", raising=False)
    monkeypatch.delenv("TASKGRAPH_RECOVER_ON_START", raising=False)


def _invoke(*args: str) -> Result:
    return CliRunner().invoke(taskgraph, ["graph", *args])


def _flat(output: str) -> str:
    """Error text with rich panel borders and line wrapping removed."""

    return " ".join(output.replace("\u2502", " ").split())


def _import(db_path: Path, graph_document: Path) -> None:
    result = _invoke("import", "--db-path", str(db_path), "--file", str(graph_document))
    assert result.exit_code == 0, result.output


def test_validate_prints_graph_summary(graph_document: Path) -> None:
    result = _invoke("validate", "--file", str(graph_document))

    assert result.exit_code == 0
    assert "Graph valid: id=graph-review task=task-review nodes=4 edges=3" in result.output


def test_validate_reports_invalid_document(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text(
        json.dumps({"id": "g", "taskId": "t", "nodes": {"a": {"type": "work", "deps": ["a"]}}}),
        "utf-8",
    )

    result = _invoke("validate", "--file", str(path))

    assert result.exit_code == 1
    assert "self-loop" in _flat(result.output)


def test_import_rejects_duplicate_graph(tmp_path: Path, graph_document: Path) -> None:
    db_path = tmp_path / "graphs.db"

    first = _invoke("import", "--db-path", str(db_path), "--file", str(graph_document))
    second = _invoke("import", "--db-path", str(db_path), "--file", str(graph_document))

    assert "Graph imported: id=graph-review task=task-review version=1 nodes=4" in first.output
    assert second.exit_code == 1
    assert "Graph already exists: graph-review" in _flat(second.output)


def test_review_pipeline_runs_to_completion(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)

    steps = [
        (
            ["tick", "--db-path", db, "--graph-id", "graph-review"],
            "Tick: graph=graph-review version=2 persisted=yes dispatched=build",
        ),
        (
            ["report", "--db-path", db, "--graph-id", "graph-review", "--node", "build",
             "--status", "done"],
            "Node build -> done (graph=graph-review version=3)",
        ),
        (
            ["tick", "--db-path", db, "--graph-id", "graph-review"],
            "dispatched=test",
        ),
        (
            ["report", "--db-path", db, "--graph-id", "graph-review", "--node", "test",
             "--status", "done"],
            "version=5",
        ),
        (
            ["tick", "--db-path", db, "--graph-id", "graph-review"],
            "dispatched=review",
        ),
        (
            ["report", "--db-path", db, "--graph-id", "graph-review", "--node", "review",
             "--status", "awaiting_human"],
            "Node review -> awaiting_human (graph=graph-review version=7)",
        ),
        (
            ["approve", "--db-path", db, "--task-id", "task-review", "-m", "looks good"],
            "Gate review approved: version 7 -> 8",
        ),
        (
            ["tick", "--db-path", db, "--graph-id", "graph-review"],
            "dispatched=release",
        ),
    ]
    for args, expected in steps:
        result = _invoke(*args)
        assert result.exit_code == 0, result.output
        assert expected in result.output

    final = _invoke(
        "report", "--db-path", db, "--graph-id", "graph-review", "--node", "release",
        "--status", "done",
    )
    shown = _invoke("show", "--db-path", db, "--task-id", "task-review")

    assert "Graph completed." in final.output
    assert "Version: 10" in shown.output
    assert "Status: completed" in shown.output
    assert "Complete: yes" in shown.output
    assert "  review type=gate status=done deps=test error=-" in shown.output
    assert "  edge review -> release hard/on_success" in shown.output


def test_tick_with_allow_list_and_unknown_graph(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)

    blocked = _invoke("tick", "--db-path", db, "--graph-id", "graph-review", "--allow", "test")
    missing = _invoke("tick", "--db-path", db, "--graph-id", "nope")

    assert "version=1 persisted=no dispatched=-" in blocked.output
    assert missing.exit_code == 1
    assert "Graph not found: nope" in _flat(missing.output)


def test_report_rejects_pending_node_and_unknown_status(
    tmp_path: Path,
    graph_document: Path,
) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)

    pending = _invoke(
        "report", "--db-path", db, "--graph-id", "graph-review", "--node", "build",
        "--status", "done",
    )
    bad_choice = _invoke(
        "report", "--db-path", db, "--graph-id", "graph-review", "--node", "build",
        "--status", "running",
    )

    assert pending.exit_code == 1
    assert "only running nodes accept a status report" in _flat(pending.output)
    assert bad_choice.exit_code == 2


def test_reject_without_awaiting_gate_fails(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)

    result = _invoke("reject", "--db-path", db, "--task-id", "task-review", "-m", "no")

    assert result.exit_code == 1
    assert "No gate is awaiting a decision in graph graph-review" in _flat(result.output)


def test_approve_refuses_stale_version(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)
    _invoke("tick", "--db-path", db, "--graph-id", "graph-review")

    result = _invoke(
        "approve", "--db-path", db, "--task-id", "task-review", "--if-match-version", "1",
    )

    assert result.exit_code == 1
    assert "expected version 1, found 2" in _flat(result.output)


def test_show_json_and_historical_versions(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)
    _invoke("tick", "--db-path", db, "--graph-id", "graph-review")

    as_json = _invoke("show", "--db-path", db, "--graph-id", "graph-review", "--json")
    first = _invoke("show", "--db-path", db, "--graph-id", "graph-review", "--version", "1")
    missing = _invoke("show", "--db-path", db, "--graph-id", "graph-review", "--version", "9")
    no_id = _invoke("show", "--db-path", db)

    payload = json.loads(as_json.output)
    assert payload["graphVersion"] == 2
    assert payload["nodes"]["build"]["status"] == "running"
    assert "Version: 1" in first.output
    assert "  build type=work status=pending deps=- error=-" in first.output
    assert "Graph graph-review has no version 9" in _flat(missing.output)
    assert "Pass --graph-id or --task-id." in _flat(no_id.output)


def test_list_and_events(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)
    _invoke("tick", "--db-path", db, "--graph-id", "graph-review")

    listed = _invoke("list", "--db-path", db)
    events = _invoke("events", "--db-path", db, "--graph-id", "graph-review")
    recent = _invoke("events", "--db-path", db, "--graph-id", "graph-review", "--limit", "1")

    assert "Graphs: 1" in listed.output
    assert "graph-review task=task-review version=2 status=-" in listed.output
    assert "Events: 3" in events.output
    assert "graph_created" in events.output
    assert "node_status build pending -> running reason=deps_satisfied" in events.output
    assert "graph_started" in recent.output
    assert "graph_created" not in recent.output


def test_run_once_and_loop(tmp_path: Path, graph_document: Path) -> None:
    db = str(tmp_path / "graphs.db")
    _import(Path(db), graph_document)

    once = _invoke("run", "--db-path", db, "--once")
    looped = _invoke("run", "--db-path", db, "--loop")

    assert (
        "Runtime summary: cycles=1 graphs_ticked=1 dispatched=1 completed=0 "
        "timed_out=0 idle_polls=0"
    ) in once.output
    assert "Recovered graphs: 1" in looped.output
    assert "dispatched=0" in looped.output
    assert "idle_polls=1" in looped.output


def test_invalid_env_setting_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKGRAPH_MAX_CONFLICT_RETRIES", "lots")

    result = _invoke("list", "--db-path", str(tmp_path / "graphs.db"))

    assert result.exit_code == 1
    assert "Invalid integer value for TASKGRAPH_MAX_CONFLICT_RETRIES" in _flat(result.output)
