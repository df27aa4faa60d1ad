"""Database models for the task store."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TaskRecord(Base):
    """One row per task. List/object fields are stored as JSON."""

    __tablename__ = "tasks"

    # Insertion sequence, used to break created_at ties when listing
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(100), unique=True, index=True)

    # Task details
    description: Mapped[str] = mapped_column(Text)
    acceptance_criteria: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    workflow: Mapped[str] = mapped_column(String(100))
    autonomy: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(50), index=True)
    priority: Mapped[str] = mapped_column(String(20))

    # Workspace
    project_path: Mapped[str] = mapped_column(String(1000))
    branch_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    workspace_strategy: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    current_stage: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Execution
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    depends_on: Mapped[list] = mapped_column(JSON, default=list)
    blocked_by: Mapped[list] = mapped_column(JSON, default=list)

    # Cost tracking
    usage: Mapped[dict] = mapped_column(JSON, default=dict)

    # Output
    logs: Mapped[list] = mapped_column(JSON, default=list)
    artifacts: Mapped[list] = mapped_column(JSON, default=list)

    # Error tracking
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    oom_killed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # Timestamps (naive UTC, microsecond precision)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
