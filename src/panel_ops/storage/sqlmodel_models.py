"""SQLModel ORM tables for the operation store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class Operation(SQLModel, table=True):
    __tablename__ = "operations"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_operations_queue", "status", "source", "created_at"),
        Index("idx_operations_started", "status", "started_at"),
        Index("idx_operations_completed", "status", "completed_at"),
        # Archived ids must never be handed out again.
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    type: str = Field(index=True)
    data: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    source: str
    retry_count: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OperationArchive(SQLModel, table=True):
    __tablename__ = "operations_archive"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_operations_archive_completed", "completed_at"),)

    id: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    type: str = Field(index=True)
    data: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    source: str
    retry_count: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    archived_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OperationEvent(SQLModel, table=True):
    __tablename__ = "operation_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_operation_events_operation_time", "operation_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    operation_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("operations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
