"""Initial pipeline schema

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "clients" in existing_tables:
        # Tables already exist, skip migration
        return

    # Create clients table
    op.create_table(
        "clients",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("contact_email", sa.Text, nullable=False),
        sa.Column("current_status", sa.Text, nullable=False, server_default="created"),
        sa.Column("status_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create workflow_transitions table (append-only)
    op.create_table(
        "workflow_transitions",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("from_status", sa.Text),
        sa.Column("to_status", sa.Text, nullable=False),
        sa.Column("trigger_event", sa.Text, nullable=False),
        sa.Column("actor", sa.Text, nullable=False, server_default="system"),
        sa.Column("context", JSONType),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("client_id", "sequence", name="uq_transitions_client_sequence"),
    )
    op.create_index("idx_transitions_client", "workflow_transitions", ["client_id"])
    op.create_index("idx_transitions_status", "workflow_transitions", ["to_status"])

    # Create generated_forms table
    op.create_table(
        "generated_forms",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_form_id", sa.Text, nullable=False, unique=True),
        sa.Column("total_questions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.Text, nullable=False, server_default="created"),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("current_question", sa.Integer, server_default="0"),
        sa.Column("completion_percentage", sa.Float, server_default="0"),
        sa.Column("partial_responses", JSONType),
        sa.Column("last_saved_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create form_responses table
    op.create_table(
        "form_responses",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("form_id", sa.Text, sa.ForeignKey("generated_forms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("submission_id", sa.Text, nullable=False, unique=True),
        sa.Column("raw_responses", JSONType, nullable=False),
        sa.Column("processed_responses", JSONType, nullable=False),
        sa.Column("completion_time_minutes", sa.Integer),
        sa.Column("submitted_at", sa.DateTime, nullable=False),
        sa.Column("ip_address", sa.Text),
        sa.Column("user_agent", sa.Text),
        sa.Column("validation_score", sa.Float),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_responses_client", "form_responses", ["client_id"])

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Text, primary_key=True),
        sa.Column("queue", sa.Text, nullable=False),
        sa.Column("client_id", sa.Text),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("priority", sa.Text, nullable=False, server_default="normal"),
        sa.Column("priority_rank", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("next_run_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("last_error", sa.Text),
        sa.Column("error_class", sa.Text),
        sa.Column("error_history", JSONType),
        sa.Column("output", JSONType),
        sa.Column("parent_job_id", sa.Text),
        sa.Column("awaiting_callback", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("external_ref", sa.Text),
        sa.Column("escalated_at", sa.DateTime),
    )
    op.create_index("idx_jobs_queue_status", "jobs", ["queue", "status"])
    op.create_index("idx_jobs_ready", "jobs", ["queue", "status", "next_run_at"])
    op.create_index("idx_jobs_client_queue", "jobs", ["client_id", "queue"])
    op.create_index("idx_jobs_external_ref", "jobs", ["external_ref"])

    # Create identified_processes table
    op.create_table(
        "identified_processes",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ai_job_id", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False, server_default="primary"),
        sa.Column("description", sa.Text),
        sa.Column("is_explicit", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("frequency_per_month", sa.Integer, server_default="0"),
        sa.Column("manual_steps_count", sa.Integer, server_default="0"),
        sa.Column("error_rate_percentage", sa.Float, server_default="0"),
        sa.Column("automation_score", sa.Float, server_default="0.5"),
        sa.Column("estimated_roi_percentage", sa.Integer, server_default="0"),
        sa.Column("implementation_complexity", sa.Text, server_default="medium"),
        sa.Column("systems_involved", JSONType),
        sa.Column("integration_complexity", sa.Text, server_default="medium"),
        sa.Column("process_metadata", JSONType),
        sa.Column("is_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("ai_job_id", "name", name="uq_processes_job_name"),
    )
    op.create_index("idx_processes_client", "identified_processes", ["client_id"])

    # Create generated_sops table
    op.create_table(
        "generated_sops",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "process_id",
            sa.Text,
            sa.ForeignKey("identified_processes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("job_id", sa.Text),
        sa.Column("objective", sa.Text, nullable=False),
        sa.Column("responsible_roles", JSONType),
        sa.Column("inputs", JSONType),
        sa.Column("steps", JSONType),
        sa.Column("outputs", JSONType),
        sa.Column("estimated_duration_minutes", sa.Integer, server_default="0"),
        sa.Column("complexity_level", sa.Text, server_default="medium"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("generation_metadata", JSONType),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("process_id", "version", name="uq_sops_process_version"),
    )
    op.create_index("idx_sops_client", "generated_sops", ["client_id"])

    # Create commercial_proposals table
    op.create_table(
        "commercial_proposals",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.Text, nullable=False, unique=True),
        sa.Column("analysis_id", sa.Text),
        sa.Column("sop_ids", JSONType, nullable=False),
        sa.Column("executive_summary", sa.Text),
        sa.Column("opportunities", JSONType),
        sa.Column("roadmap", JSONType),
        sa.Column("investment_breakdown", JSONType),
        sa.Column("total_value", sa.Float),
        sa.Column("estimated_roi", sa.Float),
        sa.Column("implementation_weeks", sa.Integer),
        sa.Column("status", sa.Text, nullable=False, server_default="draft"),
        sa.Column("pdf_file_path", sa.Text),
        sa.Column("pdf_generated_at", sa.DateTime),
        sa.Column("pdf_file_size_bytes", sa.Integer),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create rendered_documents table
    op.create_table(
        "rendered_documents",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.Text, nullable=False, unique=True),
        sa.Column("artifact_type", sa.Text, nullable=False),
        sa.Column("artifact_id", sa.Text, nullable=False),
        sa.Column("template_id", sa.Text),
        sa.Column("file_path", sa.Text, nullable=False),
        sa.Column("file_size_bytes", sa.Integer),
        sa.Column("page_count", sa.Integer),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create notifications table
    op.create_table(
        "notifications",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, sa.ForeignKey("clients.id", ondelete="CASCADE")),
        sa.Column("job_id", sa.Text, nullable=False, unique=True),
        sa.Column("notification_type", sa.Text, nullable=False),
        sa.Column("method", sa.Text, nullable=False, server_default="email"),
        sa.Column("recipient", sa.Text, nullable=False),
        sa.Column("subject", sa.Text, nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.Text),
        sa.Column("sent_at", sa.DateTime),
        sa.Column("delivery_response", JSONType),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_notifications_client", "notifications", ["client_id"])
    op.create_index("idx_notifications_provider_message", "notifications", ["provider_message_id"])

    # Create webhook_events table (idempotency keys)
    op.create_table(
        "webhook_events",
        sa.Column("event_key", sa.Text, primary_key=True),
        sa.Column("source", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("outcome", sa.Text, nullable=False),
        sa.Column("correlation_id", sa.Text),
        sa.Column("received_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("notifications")
    op.drop_table("rendered_documents")
    op.drop_table("commercial_proposals")
    op.drop_table("generated_sops")
    op.drop_table("identified_processes")
    op.drop_table("jobs")
    op.drop_table("form_responses")
    op.drop_table("generated_forms")
    op.drop_table("workflow_transitions")
    op.drop_table("clients")
