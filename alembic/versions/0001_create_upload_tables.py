"""create upload_jobs and upload_rate_limits

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "upload_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("source_ip", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("storage_bucket", sa.String(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("page_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(owner_id IS NULL) <> (session_id IS NULL)",
            name="ck_upload_jobs_owner_xor_session",
        ),
    )
    op.create_index("ix_upload_jobs_owner_id", "upload_jobs", ["owner_id"])
    op.create_index("ix_upload_jobs_session_id", "upload_jobs", ["session_id"])
    op.create_index("ix_upload_jobs_status", "upload_jobs", ["status"])

    op.create_table(
        "upload_rate_limits",
        sa.Column("source_ip", sa.String(), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("window_reset_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("upload_rate_limits")
    op.drop_index("ix_upload_jobs_status", table_name="upload_jobs")
    op.drop_index("ix_upload_jobs_session_id", table_name="upload_jobs")
    op.drop_index("ix_upload_jobs_owner_id", table_name="upload_jobs")
    op.drop_table("upload_jobs")
