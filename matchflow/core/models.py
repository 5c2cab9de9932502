from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from matchflow.core.db import Base

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Match(Base):
    __tablename__ = "matches"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # ingestion: direct upload (bucket/key) or remote link download
    source_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_bucket: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    ingestion_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ingestion_status: Mapped[str] = mapped_column(
        String, default="not_started", nullable=False, index=True
    )
    ingestion_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ingestion_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ingestion_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ingestion_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    ingestion_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    detection_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    detection_status: Mapped[str] = mapped_column(
        String, default="not_started", nullable=False, index=True
    )
    detection_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    detection_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    detection_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    detection_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    detection_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # loop submissions that failed while the stage was not_started
    detection_submit_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    players: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    analysis_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    analysis_status: Mapped[str] = mapped_column(
        String, default="not_started", nullable=False, index=True
    )
    analysis_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    analysis_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    analysis_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    analysis_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_submit_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    analysis_result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    player_assignments: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    creator_player_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ProcessingLease(Base):
    __tablename__ = "processing_leases"

    resource_key: Mapped[str] = mapped_column(String, primary_key=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
