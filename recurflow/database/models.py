"""
SQLAlchemy models for PostgreSQL database.

Schema includes:
- Recurrence definitions with their firing claim and instance ledger
- Work items (parent cards and the instances generated from them)
- Audit logs for recurrence activity
"""

from datetime import datetime
from typing import Optional, List, Dict
from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ==================== RECURRENCES ====================

class RecurringTaskDB(Base):
    """Recurrence definition attached to a parent work item."""
    __tablename__ = "recurring_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recurrence_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # REC-YYYYMMDD-XXXXXXXX

    # Ownership
    parent_id: Mapped[str] = mapped_column(String(100), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Schedule
    schedule_shape: Mapped[str] = mapped_column(String(30), nullable=False)
    schedule_options: Mapped[Dict] = mapped_column(JSON, nullable=False)
    firing_behavior: Mapped[str] = mapped_column(String(30), default="on_schedule")
    end_condition: Mapped[Dict] = mapped_column(JSON, nullable=False)
    due_time: Mapped[str] = mapped_column(String(10), nullable=False)  # 09:00, 18:30
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    skip_weekends: Mapped[bool] = mapped_column(Boolean, default=False)

    # Instance template
    template: Mapped[Dict] = mapped_column(JSON, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="active")
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    next_occurrence: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_occurrence: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_occurrences: Mapped[int] = mapped_column(Integer, default=0)
    generated_instance_ids: Mapped[List] = mapped_column(JSON, default=list)

    # Firing claim (idempotency marker with lease)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claim_occurrence: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metadata
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_recurring_parent_active", "parent_id", "is_active"),
        Index(
            "uq_recurring_one_active_per_parent",
            "parent_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("idx_recurring_workspace_active", "workspace_id", "is_active"),
        Index("idx_recurring_due", "is_active", "next_occurrence"),
    )


# ==================== WORK ITEMS ====================

class WorkItemDB(Base):
    """Cards and the subtasks/tasks generated for them by recurrences."""
    __tablename__ = "work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    parent_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # None for top-level cards
    workspace_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), default="task")  # task, subtask

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(30), default="todo")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    assignees: Mapped[List] = mapped_column(JSON, default=list)
    tags: Mapped[List] = mapped_column(JSON, default=list)
    position: Mapped[int] = mapped_column(Integer, default=0)

    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Recurrence linkage
    recurrence_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("recurrence_id", "scheduled_for", name="uq_work_item_occurrence"),
        Index("idx_work_items_parent", "parent_id"),
        Index("idx_work_items_workspace", "workspace_id"),
    )


# ==================== AUDIT ====================

class AuditLogDB(Base):
    """Activity trail for recurrence changes and firings."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    entity_type: Mapped[str] = mapped_column(String(50), default="recurrence")
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    workspace_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    parent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    source: Mapped[str] = mapped_column(String(30), default="api")  # api, scheduler

    details: Mapped[Optional[Dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_action", "action"),
        Index("idx_audit_timestamp", "timestamp"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )
