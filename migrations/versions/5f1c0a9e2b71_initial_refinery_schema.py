"""initial_refinery_schema

Create template catalog, flow graph and batch tracking tables.

Revision ID: 5f1c0a9e2b71
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5f1c0a9e2b71"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "station_templates" not in existing_tables:
        op.create_table(
            "station_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("estimated_duration_min", sa.Integer(), nullable=True),
            sa.Column("sop_steps", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_station_templates_template_id", "station_templates", ["template_id"], unique=True,
        )

    if "check_templates" not in existing_tables:
        op.create_table(
            "check_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("check_type", sa.String(length=20), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("tolerance", sa.Float(), nullable=True),
            sa.Column("tolerance_unit", sa.String(length=2), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_check_templates_template_id", "check_templates", ["template_id"], unique=True,
        )

    if "flows" not in existing_tables:
        op.create_table(
            "flows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("flow_key", sa.String(length=64), nullable=False),
            sa.Column("version", sa.String(length=40), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("pipeline", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("effective_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("flow_key", "version", name="uq_flows_key_version"),
        )
        op.create_index("ix_flows_flow_key", "flows", ["flow_key"])
        op.create_index("idx_flows_pipeline_status", "flows", ["pipeline", "status"])

    if "flow_nodes" not in existing_tables:
        op.create_table(
            "flow_nodes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("flow_id", sa.Integer(), nullable=False),
            sa.Column("node_key", sa.String(length=64), nullable=False),
            sa.Column("node_type", sa.String(length=20), nullable=False),
            sa.Column("template_id", sa.String(length=64), nullable=False),
            sa.Column("position_x", sa.Float(), nullable=True),
            sa.Column("position_y", sa.Float(), nullable=True),
            sa.Column("selected_sops", sa.JSON(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["flow_id"], ["flows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("flow_id", "node_key", name="uq_flow_nodes_flow_key"),
        )
        op.create_index("ix_flow_nodes_flow_id", "flow_nodes", ["flow_id"])

    if "flow_edges" not in existing_tables:
        op.create_table(
            "flow_edges",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("flow_id", sa.Integer(), nullable=False),
            sa.Column("edge_key", sa.String(length=64), nullable=False),
            sa.Column("source", sa.String(length=64), nullable=False),
            sa.Column("target", sa.String(length=64), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["flow_id"], ["flows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_flow_edges_flow_id", "flow_edges", ["flow_id"])

    if "batches" not in existing_tables:
        op.create_table(
            "batches",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("batch_number", sa.String(length=64), nullable=False),
            sa.Column("flow_id", sa.Integer(), nullable=False),
            sa.Column("flow_version", sa.String(length=40), nullable=False),
            sa.Column("pipeline", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="created"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="normal"),
            sa.Column("current_node_id", sa.String(length=64), nullable=True),
            sa.Column("current_station", sa.String(length=64), nullable=True),
            sa.Column("completed_node_ids", sa.JSON(), nullable=False),
            sa.Column("initial_weight", sa.Float(), nullable=True),
            sa.Column("received_weight_g", sa.Float(), nullable=True),
            sa.Column("fine_content_percent", sa.Float(), nullable=True),
            sa.Column("fine_grams_received", sa.Float(), nullable=True),
            sa.Column("expected_output_g", sa.Float(), nullable=True),
            sa.Column("actual_output_g", sa.Float(), nullable=True),
            sa.Column("output_weight_g", sa.Float(), nullable=True),
            sa.Column("loss_gain_g", sa.Float(), nullable=True),
            sa.Column("loss_gain_percent", sa.Float(), nullable=True),
            sa.Column("first_time_recovery_g", sa.Float(), nullable=True),
            sa.Column("total_recovery_g", sa.Float(), nullable=True),
            sa.Column("overall_recovery_percent", sa.Float(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_minutes", sa.Integer(), nullable=True),
            sa.Column("melting_received_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("first_export_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("ftt_hours", sa.Float(), nullable=True),
            sa.Column("supplier", sa.String(length=200), nullable=True),
            sa.Column("drill_number", sa.String(length=64), nullable=True),
            sa.Column("destination", sa.String(length=200), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=False, server_default="system"),
            sa.Column("created_by_name", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["flow_id"], ["flows.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_batches_batch_number", "batches", ["batch_number"], unique=True)
        op.create_index("ix_batches_flow_id", "batches", ["flow_id"])
        op.create_index("ix_batches_pipeline", "batches", ["pipeline"])
        op.create_index("idx_batches_status_priority", "batches", ["status", "priority"])
        op.create_index("idx_batches_pipeline_status", "batches", ["pipeline", "status"])
        op.create_index("idx_batches_completed_at", "batches", ["completed_at"])

    if "batch_events" not in existing_tables:
        op.create_table(
            "batch_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=False),
            sa.Column("event_id", sa.String(length=40), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("user_id", sa.String(length=100), nullable=False),
            sa.Column("user_name", sa.String(length=150), nullable=True),
            sa.Column("station", sa.String(length=64), nullable=True),
            sa.Column("step", sa.String(length=64), nullable=True),
            sa.Column("data", sa.JSON(), nullable=False),
            sa.Column("warning", sa.String(length=500), nullable=True),
            sa.ForeignKeyConstraint(["batch_id"], ["batches.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_id"),
            sa.UniqueConstraint("batch_id", "sequence", name="uq_batch_events_sequence"),
        )
        op.create_index("ix_batch_events_batch_id", "batch_events", ["batch_id"])
        op.create_index("idx_batch_events_type", "batch_events", ["event_type"])
        op.create_index("idx_batch_events_ts", "batch_events", ["timestamp"])

    if "batch_flags" not in existing_tables:
        op.create_table(
            "batch_flags",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("flag_type", sa.String(length=30), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("flagged_by", sa.String(length=100), nullable=False),
            sa.Column("approved_by", sa.String(length=100), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approval_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["batch_id"], ["batches.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("batch_id", "position", name="uq_batch_flags_position"),
        )
        op.create_index("ix_batch_flags_batch_id", "batch_flags", ["batch_id"])

    if "recovery_pours" not in existing_tables:
        op.create_table(
            "recovery_pours",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.String(length=64), nullable=False),
            sa.Column("pour_number", sa.Integer(), nullable=False),
            sa.Column("weight_g", sa.Float(), nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["batch_id"], ["batches.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("batch_id", "node_id", name="uq_recovery_pours_node"),
        )
        op.create_index("ix_recovery_pours_batch_id", "recovery_pours", ["batch_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # Children first
    for table in (
        "recovery_pours",
        "batch_flags",
        "batch_events",
        "batches",
        "flow_edges",
        "flow_nodes",
        "flows",
        "check_templates",
        "station_templates",
    ):
        if table in existing_tables:
            op.drop_table(table)
