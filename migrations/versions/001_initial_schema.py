"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Uploads, episodes and transcoding jobs.
For existing databases, use 'alembic stamp 001' to mark as current.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the transcoder tables."""
    op.create_table(
        "uploads",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("stored_path", sa.Text, nullable=False),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), server_default="uploading"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("status IN ('uploading', 'completed', 'failed')", name="ck_uploads_status"),
    )

    op.create_table(
        "episodes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("filesystem_path", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "transcoding_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "episode_id", sa.String(36), sa.ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("upload_id", sa.String(36), sa.ForeignKey("uploads.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_by_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("preset_info", sa.Text, nullable=False, server_default="{}"),
        sa.Column("logs_text", sa.Text, nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'success', 'failed', 'cancelled')",
            name="ck_transcoding_jobs_status",
        ),
    )
    op.create_index("ix_transcoding_jobs_episode_id", "transcoding_jobs", ["episode_id"])
    op.create_index("ix_transcoding_jobs_status", "transcoding_jobs", ["status"])
    op.create_index("ix_transcoding_jobs_created_at", "transcoding_jobs", ["created_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_transcoding_jobs_created_at", table_name="transcoding_jobs")
    op.drop_index("ix_transcoding_jobs_status", table_name="transcoding_jobs")
    op.drop_index("ix_transcoding_jobs_episode_id", table_name="transcoding_jobs")
    op.drop_table("transcoding_jobs")
    op.drop_table("episodes")
    op.drop_table("uploads")
