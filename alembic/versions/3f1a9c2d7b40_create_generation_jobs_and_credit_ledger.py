"""create_generation_jobs_and_credit_ledger

Revision ID: 3f1a9c2d7b40
Revises:
Create Date: 2026-10-19 10:12:41.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", "REFUNDED", name="jobstatus"
)
quality_tier = sa.Enum("STANDARD", "PREMIUM", name="qualitytier")
ledger_operation = sa.Enum("RESERVE", "REFUND", "CONFIRM", name="ledgeroperation")


def upgrade() -> None:
    """Create user_accounts, generation_jobs and credit_ledger_entries."""
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("credit_balance", sa.Integer(), nullable=False),
        sa.Column("push_token", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("credit_balance >= 0", name="ck_user_accounts_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("generation_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("original_prompt", sa.Text(), nullable=False),
        sa.Column("enhanced_prompt", sa.Text(), nullable=True),
        sa.Column("input_image_refs", sa.JSON(), nullable=True),
        sa.Column("result_image_ref", sa.String(), nullable=True),
        sa.Column("aspect_ratio", sa.String(length=10), nullable=False),
        sa.Column("quality_tier", quality_tier, nullable=False),
        sa.Column("cost_in_credits", sa.Integer(), nullable=False),
        sa.Column("credits_reserved", sa.Boolean(), nullable=False),
        sa.Column("credits_deducted", sa.Boolean(), nullable=False),
        sa.Column("credits_refunded", sa.Boolean(), nullable=False),
        sa.Column("credits_before", sa.Integer(), nullable=True),
        sa.Column("credits_after", sa.Integer(), nullable=True),
        sa.Column("synthesis_attempts", sa.Integer(), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("generation_id", "user_id", name="uq_generation_user"),
    )
    op.create_index("ix_generation_jobs_generation_id", "generation_jobs", ["generation_id"])
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_credits_reserved", "generation_jobs", ["credits_reserved"])
    op.create_index("ix_generation_jobs_credits_deducted", "generation_jobs", ["credits_deducted"])
    op.create_index("ix_generation_jobs_credits_refunded", "generation_jobs", ["credits_refunded"])

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("operation", ledger_operation, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "operation", name="uq_ledger_job_operation"),
    )
    op.create_index("ix_credit_ledger_entries_job_id", "credit_ledger_entries", ["job_id"])
    op.create_index("ix_credit_ledger_entries_user_id", "credit_ledger_entries", ["user_id"])


def downgrade() -> None:
    """Drop ledger and job tables with their enum types."""
    op.drop_index("ix_credit_ledger_entries_user_id", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_entries_job_id", table_name="credit_ledger_entries")
    op.drop_table("credit_ledger_entries")

    for index in (
        "ix_generation_jobs_credits_refunded",
        "ix_generation_jobs_credits_deducted",
        "ix_generation_jobs_credits_reserved",
        "ix_generation_jobs_status",
        "ix_generation_jobs_user_id",
        "ix_generation_jobs_generation_id",
    ):
        op.drop_index(index, table_name="generation_jobs")
    op.drop_table("generation_jobs")
    op.drop_table("user_accounts")

    bind = op.get_bind()
    ledger_operation.drop(bind, checkfirst=True)
    quality_tier.drop(bind, checkfirst=True)
    job_status.drop(bind, checkfirst=True)
