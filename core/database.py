from datetime import datetime, timezone

import sqlalchemy as sa

from config import DATABASE_URL

metadata = sa.MetaData()


# Uploaded source files. Written by the upload service; the transcoder only
# reads them and checks that the upload completed before queueing a job.
uploads = sa.Table(
    "uploads",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    # Relative to UPLOADS_PATH, or absolute
    sa.Column("stored_path", sa.Text, nullable=False),
    sa.Column("original_filename", sa.String(255), nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploading', 'completed', 'failed')",
            name="ck_uploads_status"
        ),
        default="uploading"
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)

episodes = sa.Table(
    "episodes",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("title", sa.String(255), nullable=True),
    # Permanent master playlist path, NULL until a transcode succeeds
    sa.Column("filesystem_path", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)

# Transcoding jobs
#
# STATE MACHINE:
# -------------
# pending -> running -> success | failed
# pending | running -> cancelled (operator)
# success, failed and cancelled are terminal. A retry creates a new row.
#
# At most one pending/running job per episode, enforced by the producer.
transcoding_jobs = sa.Table(
    "transcoding_jobs",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("episode_id", sa.String(36), sa.ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False),
    sa.Column("upload_id", sa.String(36), sa.ForeignKey("uploads.id"), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'success', 'failed', 'cancelled')",
            name="ck_transcoding_jobs_status"
        ),
        nullable=False,
        default="pending"
    ),
    sa.Column("created_by_id", sa.String(36), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    # JSON object: keepOriginal, preferDownscaleTo1080, uploadId, and the
    # output summary written on success. Unknown keys are preserved.
    sa.Column("preset_info", sa.Text, nullable=False, default="{}"),
    sa.Column("logs_text", sa.Text, nullable=True),
    sa.Index("ix_transcoding_jobs_episode_id", "episode_id"),
    sa.Index("ix_transcoding_jobs_status", "status"),
    sa.Index("ix_transcoding_jobs_created_at", "created_at"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
