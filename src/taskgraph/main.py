"""CLI entrypoint for taskgraph."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskgraph import __version__
from taskgraph.config import Settings
from taskgraph.graph.controllers import (
    DOMAIN_ERRORS,
    GraphCliController,
    GraphEventsCommand,
    GraphFileCommand,
    GraphGateCommand,
    GraphListCommand,
    GraphReportCommand,
    GraphRunCommand,
    GraphShowCommand,
    GraphTickCommand,
)
from taskgraph.graph.models import REPORTABLE_NODE_STATUSES

click.rich_click.USE_MARKDOWN = True
GRAPH_CONTROLLER = GraphCliController()

DB_PATH_HELP = "SQLite DB path (default: TASKGRAPH_DB_PATH or .taskgraph.db)."


@click.group()
@click.version_option(version=__version__, prog_name="taskgraph")
def taskgraph() -> None:
    """Execution graph scheduler CLI."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskgraph.group()
def graph() -> None:
    """Graph commands."""


@graph.command("validate")
@click.option(
    "--file",
    "file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Graph JSON document.",
)
def graph_validate(file: Path) -> None:
    """Check a graph document without storing it."""

    _run(lambda: GRAPH_CONTROLLER.validate(GraphFileCommand(db_path=None, file=file)))


@graph.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--file",
    "file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Graph JSON document.",
)
def graph_import(db_path: Path | None, file: Path) -> None:
    """Validate a graph document and store it as version 1."""

    _run(lambda: GRAPH_CONTROLLER.import_graph(GraphFileCommand(db_path=db_path, file=file)))


@graph.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max graphs to print.",
)
def graph_list(db_path: Path | None, limit: int) -> None:
    """List stored graphs, newest first."""

    _run(lambda: GRAPH_CONTROLLER.list_graphs(GraphListCommand(db_path=db_path, limit=limit)))


@graph.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--graph-id", default=None, help="Graph id.")
@click.option("--task-id", default=None, help="Task id (alternative to --graph-id).")
@click.option(
    "--version",
    "version",
    type=click.IntRange(min=1),
    default=None,
    help="Show a historical graph version.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the JSON document.")
def graph_show(
    db_path: Path | None,
    graph_id: str | None,
    task_id: str | None,
    version: int | None,
    as_json: bool,
) -> None:
    """Inspect one graph and its nodes."""

    _run(
        lambda: GRAPH_CONTROLLER.show(
            GraphShowCommand(
                db_path=db_path,
                graph_id=graph_id,
                task_id=task_id,
                version=version,
                as_json=as_json,
            ),
        ),
    )


@graph.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--graph-id", required=True, help="Graph id.")
@click.option(
    "--allow",
    "allowed_node_ids",
    multiple=True,
    help="Only these node ids may start. Can be repeated.",
)
def graph_tick(db_path: Path | None, graph_id: str, allowed_node_ids: tuple[str, ...]) -> None:
    """Run one scheduling round and persist the dispatches."""

    _run(
        lambda: GRAPH_CONTROLLER.tick(
            GraphTickCommand(
                db_path=db_path,
                graph_id=graph_id,
                allowed_node_ids=allowed_node_ids,
            ),
        ),
    )


@graph.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Tick every in-progress graph once, or loop until idle.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for passes in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive passes without progress before the loop exits.",
)
def graph_run(
    db_path: Path | None,
    once: bool,
    max_cycles: int | None,
    max_idle_polls: int,
) -> None:
    """Drive in-progress graphs through the scheduler."""

    _run(
        lambda: GRAPH_CONTROLLER.run(
            GraphRunCommand(
                db_path=db_path,
                once=once,
                max_cycles=max_cycles,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@graph.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--graph-id", required=True, help="Graph id.")
@click.option("--node", "node_id", required=True, help="Running node id.")
@click.option(
    "--status",
    type=click.Choice(
        sorted(status.value for status in REPORTABLE_NODE_STATUSES),
        case_sensitive=False,
    ),
    required=True,
    help="New node status.",
)
@click.option("--error", default=None, help="Optional error message.")
def graph_report(
    db_path: Path | None,
    graph_id: str,
    node_id: str,
    status: str,
    error: str | None,
) -> None:
    """Record the outcome of a running node."""

    _run(
        lambda: GRAPH_CONTROLLER.report(
            GraphReportCommand(
                db_path=db_path,
                graph_id=graph_id,
                node_id=node_id,
                status=status.lower(),
                error=error,
            ),
        ),
    )


def _gate_options(func: Callable[..., None]) -> Callable[..., None]:
    func = click.option(
        "--if-match-version",
        type=click.IntRange(min=1),
        default=None,
        help="Refuse the decision if the graph moved past this version.",
    )(func)
    func = click.option("-m", "--message", "feedback", default=None, help="Reviewer feedback.")(
        func,
    )
    func = click.option("--node", "node_id", default=None, help="Gate node id.")(func)
    func = click.option("--task-id", required=True, help="Task id.")(func)
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help=DB_PATH_HELP,
    )(func)


@graph.command("approve")
@_gate_options
def graph_approve(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    node_id: str | None,
    feedback: str | None,
    if_match_version: int | None,
) -> None:
    """Approve a gate awaiting human verification."""

    _resolve_gate(
        db_path=db_path,
        task_id=task_id,
        node_id=node_id,
        feedback=feedback,
        if_match_version=if_match_version,
        approved=True,
    )


@graph.command("reject")
@_gate_options
def graph_reject(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    node_id: str | None,
    feedback: str | None,
    if_match_version: int | None,
) -> None:
    """Reject a gate awaiting human verification."""

    _resolve_gate(
        db_path=db_path,
        task_id=task_id,
        node_id=node_id,
        feedback=feedback,
        if_match_version=if_match_version,
        approved=False,
    )


@graph.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--graph-id", required=True, help="Graph id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max events to print (most recent).",
)
def graph_events(db_path: Path | None, graph_id: str, limit: int) -> None:
    """Show the audit trail of one graph."""

    _run(
        lambda: GRAPH_CONTROLLER.events(
            GraphEventsCommand(db_path=db_path, graph_id=graph_id, limit=limit),
        ),
    )


def _resolve_gate(  # noqa: PLR0913
    *,
    db_path: Path | None,
    task_id: str,
    node_id: str | None,
    feedback: str | None,
    if_match_version: int | None,
    approved: bool,
) -> None:
    _run(
        lambda: GRAPH_CONTROLLER.resolve_gate(
            GraphGateCommand(
                db_path=db_path,
                task_id=task_id,
                approved=approved,
                node_id=node_id,
                feedback=feedback,
                if_match_version=if_match_version,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except DOMAIN_ERRORS as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskgraph()
