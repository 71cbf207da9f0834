from enum import Enum
from typing import List, Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, Index, JSON, text


class TaskStatus(str, Enum):
    TODO = 'TODO'
    IN_PROGRESS = 'IN_PROGRESS'
    DONE = 'DONE'


class TaskPriority(str, Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    URGENT = 'URGENT'


# Live (non-trashed) instances are unique per parent by due date. Trashed
# rows are left out so a trashed occurrence can be materialized again.
_LIVE_ROWS = text('trashed_at IS NULL')


class Task(SQLModel, table=True):
    """A task row. Recurring definitions and their instances share this table.

    A definition carries ``recurrence_rule`` and no parent; an instance points
    at its definition through ``parent_recurring_task_id`` and records the
    position of its occurrence in the rule at the time it was created in
    ``occurrence_index``. That position shifts when the rule changes, so it
    is informational and never used to decide whether an occurrence exists.
    """
    __table_args__ = (
        Index(
            'uq_task_parent_due_date', 'parent_recurring_task_id', 'due_date',
            unique=True, sqlite_where=_LIVE_ROWS, postgresql_where=_LIVE_ROWS,
        ),
        Index('ix_task_parent_occurrence', 'parent_recurring_task_id', 'occurrence_index'),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    status: TaskStatus = Field(default=TaskStatus.TODO, index=True)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    # Scoping: every task belongs to a dashboard, optionally to a business.
    dashboard_id: str = Field(index=True)
    business_id: Optional[str] = Field(default=None, index=True)
    created_by_id: str
    project_id: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    # Estimated effort in minutes
    time_estimate: Optional[int] = None
    due_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    start_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    # RRULE body, optionally multi-line with EXDATE entries
    recurrence_rule: Optional[str] = None
    recurrence_end_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    parent_recurring_task_id: Optional[int] = Field(default=None, foreign_key="task.id", index=True)
    occurrence_index: Optional[int] = None
    trashed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime | None = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))
    modified_at: datetime | None = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class TaskCreate(SQLModel):
    """Payload for creating a (possibly recurring) task definition."""
    title: str
    dashboard_id: str
    created_by_id: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    business_id: Optional[str] = None
    project_id: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    time_estimate: Optional[int] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    recurrence_rule: Optional[str] = None
    recurrence_end_at: Optional[datetime] = None


class RecurrenceUpdate(SQLModel):
    """Partial update of a definition's recurrence. Only fields that were
    explicitly provided are applied (see ``model_fields_set``)."""
    recurrence_rule: Optional[str] = None
    recurrence_end_at: Optional[datetime] = None
