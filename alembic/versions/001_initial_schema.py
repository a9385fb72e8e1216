"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Recipients (profile store)
    op.create_table(
        "recipients",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("timezone", sa.String(50), nullable=False, server_default="America/New_York"),
        sa.Column("ranked_attributes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recipients_email", "recipients", ["email"], unique=True)

    op.create_table(
        "associated_people",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_associated_people_recipient_id", "associated_people", ["recipient_id"])

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=False),
        sa.Column("series_kind", sa.String(20), nullable=False),
        sa.Column("timezone", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_eligible_time", sa.DateTime(), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(), nullable=True),
        sa.Column("last_sent_date", sa.Date(), nullable=True),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recent_openers", sa.JSON(), nullable=False),
        sa.Column("recent_collaborators", sa.JSON(), nullable=False),
        sa.Column("recent_subject_patterns", sa.JSON(), nullable=False),
        sa.Column("recent_quote_sources", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_recipient_id", "subscriptions", ["recipient_id"])
    op.create_index(
        "ix_subscriptions_due",
        "subscriptions",
        ["is_active", "series_kind", "next_eligible_time"],
    )

    # Delivery attempts needing durable retry tracking
    op.create_table(
        "delivery_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=False),
        sa.Column("series_kind", sa.String(20), nullable=False),
        sa.Column("subject_line", sa.String(500), nullable=False),
        sa.Column("delivery_index", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_delivery_attempts_subscription_id", "delivery_attempts", ["subscription_id"]
    )
    op.create_index("ix_delivery_attempts_recipient_id", "delivery_attempts", ["recipient_id"])
    op.create_index(
        "ix_delivery_attempts_status_retry", "delivery_attempts", ["status", "retry_count"]
    )

    # Daily metrics
    op.create_table(
        "metrics_snapshots",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("period_date", sa.Date(), nullable=False),
        sa.Column("total_attempted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timezone_breakdown", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_metrics_snapshots_period_date", "metrics_snapshots", ["period_date"])

    # Scheduler history
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.String(100), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_runs_job_id", "job_runs", ["job_id"])
    op.create_index("ix_job_runs_scheduled_at", "job_runs", ["scheduled_at"])


def downgrade() -> None:
    op.drop_index("ix_job_runs_scheduled_at", table_name="job_runs")
    op.drop_index("ix_job_runs_job_id", table_name="job_runs")
    op.drop_table("job_runs")

    op.drop_index("ix_metrics_snapshots_period_date", table_name="metrics_snapshots")
    op.drop_table("metrics_snapshots")

    op.drop_index("ix_delivery_attempts_status_retry", table_name="delivery_attempts")
    op.drop_index("ix_delivery_attempts_recipient_id", table_name="delivery_attempts")
    op.drop_index("ix_delivery_attempts_subscription_id", table_name="delivery_attempts")
    op.drop_table("delivery_attempts")

    op.drop_index("ix_subscriptions_due", table_name="subscriptions")
    op.drop_index("ix_subscriptions_recipient_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_associated_people_recipient_id", table_name="associated_people")
    op.drop_table("associated_people")

    op.drop_index("ix_recipients_email", table_name="recipients")
    op.drop_table("recipients")
