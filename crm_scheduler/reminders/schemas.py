"""
Request/response schemas for recurring task templates, tasks and task reminders

Naive datetimes in requests are civil wall-clock values (what a user types into
the CRM); aware datetimes are taken as instants.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecurringTaskCreate(BaseModel):
    """Schema for creating a recurring task template"""
    title: str
    description: Optional[str] = None
    contact_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: Optional[str] = "medium"
    category: Optional[str] = None
    supporting_docs: List[str] = Field(default_factory=list)
    recurrence_type: str
    start_time: str = Field(..., description="Local wall-clock time, HH:MM")
    due_time: str = Field(..., description="Local wall-clock time, HH:MM")
    start_days: Optional[List[str]] = None
    due_days: Optional[List[str]] = None
    start_day_of_month: Optional[int] = Field(default=None, description="1-31, or 0 for the last day")
    due_day_of_month: Optional[int] = None
    is_active: bool = True


class RecurringTaskUpdate(BaseModel):
    """Partial update; only fields that are sent are applied"""
    title: Optional[str] = None
    description: Optional[str] = None
    contact_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    supporting_docs: Optional[List[str]] = None
    recurrence_type: Optional[str] = None
    start_time: Optional[str] = None
    due_time: Optional[str] = None
    start_days: Optional[List[str]] = None
    due_days: Optional[List[str]] = None
    start_day_of_month: Optional[int] = None
    due_day_of_month: Optional[int] = None
    is_active: Optional[bool] = None


class RecurringTaskRead(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    contact_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: str
    category: Optional[str] = None
    supporting_docs: List[str] = Field(default_factory=list)
    recurrence_type: str
    start_time: str
    due_time: str
    start_days: Optional[List[str]] = None
    due_days: Optional[List[str]] = None
    start_day_of_month: Optional[int] = None
    due_day_of_month: Optional[int] = None
    is_active: bool
    next_occurrence_utc: Optional[datetime] = None
    last_occurrence_utc: Optional[datetime] = None
    occurrence_count: int
    dispatch_status: str
    failure_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OccurrencePreview(BaseModel):
    start_utc: datetime
    due_utc: datetime
    start_local: datetime
    due_local: datetime


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    contact_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: str = "Medium"
    category: str = "Other"
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class TaskDatesUpdate(BaseModel):
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class TaskRead(BaseModel):
    id: str
    recurring_task_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    contact_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: str
    status: str
    category: str
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    supporting_documents: List[str] = Field(default_factory=list)
    progress_percentage: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskReminderCreate(BaseModel):
    anchor_kind: str = "due_date"
    custom_datetime: Optional[datetime] = None
    offset_timing: str = "before"
    offset_value: int = 0
    offset_unit: str = "minutes"


class TaskReminderUpdate(BaseModel):
    anchor_kind: Optional[str] = None
    custom_datetime: Optional[datetime] = None
    offset_timing: Optional[str] = None
    offset_value: Optional[int] = None
    offset_unit: Optional[str] = None


class TaskReminderRead(BaseModel):
    id: str
    task_id: str
    anchor_kind: str
    custom_datetime_utc: Optional[datetime] = None
    offset_timing: str
    offset_value: int
    offset_unit: str
    calculated_trigger_utc: datetime
    is_sent: bool
    sent_at: Optional[datetime] = None
    dispatch_status: str
    failure_count: int
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class FailedItemRead(BaseModel):
    kind: str
    id: str
    failure_count: int
    last_error: Optional[str] = None
    updated_at: datetime
