"""Create execution graph, version history, and graph event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "execution_graphs",
        sa.Column("graph_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("graph_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timed_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("graph_id"),
    )
    op.create_index("uq_execution_graphs_task", "execution_graphs", ["task_id"], unique=True)
    op.create_index("ix_execution_graphs_status", "execution_graphs", ["status"])

    op.create_table(
        "execution_graph_versions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("graph_id", sa.String(), nullable=False),
        sa.Column("graph_version", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["graph_id"], ["execution_graphs.graph_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "graph_id",
            "graph_version",
            name="uq_execution_graph_versions_graph_version",
        ),
    )
    op.create_index(
        "ix_execution_graph_versions_graph_id",
        "execution_graph_versions",
        ["graph_id"],
    )

    op.create_table(
        "graph_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("graph_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("node_id", sa.String(), nullable=True),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["graph_id"], ["execution_graphs.graph_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_graph_events_graph_id", "graph_events", ["graph_id"])
    op.create_index("ix_graph_events_event_type", "graph_events", ["event_type"])
    op.create_index("ix_graph_events_node_id", "graph_events", ["node_id"])
    op.create_index("idx_graph_events_graph_time", "graph_events", ["graph_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_graph_events_graph_time", table_name="graph_events")
    op.drop_index("ix_graph_events_node_id", table_name="graph_events")
    op.drop_index("ix_graph_events_event_type", table_name="graph_events")
    op.drop_index("ix_graph_events_graph_id", table_name="graph_events")
    op.drop_table("graph_events")
    op.drop_index(
        "ix_execution_graph_versions_graph_id",
        table_name="execution_graph_versions",
    )
    op.drop_table("execution_graph_versions")
    op.drop_index("ix_execution_graphs_status", table_name="execution_graphs")
    op.drop_index("uq_execution_graphs_task", table_name="execution_graphs")
    op.drop_table("execution_graphs")
