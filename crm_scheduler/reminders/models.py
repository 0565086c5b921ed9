"""
Persistence models for recurring task templates, tasks and task reminders
"""
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from crm_scheduler.db.base import Base
from crm_scheduler.utils.timezone import now_utc, to_utc_aware
from .recurrence_models import RecurrenceRule
from .reminder_models import AnchorKind, OffsetTiming, OffsetUnit, ReminderRule

# Dispatch states shared by templates and reminders
STATUS_PENDING = "Pending"
STATUS_CLAIMED = "Claimed"
STATUS_FIRED = "Fired"
STATUS_FAILED = "Failed"


def _uuid() -> str:
    return str(uuid.uuid4())


class RecurringTask(Base):
    """Template from which a task is instantiated on every occurrence"""
    __tablename__ = "recurring_tasks"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    contact_id = Column(String, nullable=True, index=True)
    assigned_to = Column(String, nullable=True, index=True)
    priority = Column(String(20), nullable=False, default="medium")
    category = Column(String, nullable=True)
    supporting_docs = Column(JSON, nullable=False, default=list)

    recurrence_type = Column(String(20), nullable=False)
    start_time = Column(String(8), nullable=False)  # local HH:MM
    due_time = Column(String(8), nullable=False)
    start_days = Column(JSON, nullable=True)  # weekday tokens, weekly only
    due_days = Column(JSON, nullable=True)
    start_day_of_month = Column(Integer, nullable=True)  # 0 = last day, monthly only
    due_day_of_month = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    next_occurrence_utc = Column(DateTime(timezone=True), nullable=True)
    last_occurrence_utc = Column(DateTime(timezone=True), nullable=True)
    occurrence_count = Column(Integer, nullable=False, default=0)

    # Dispatch bookkeeping
    dispatch_status = Column(String(16), nullable=False, default=STATUS_PENDING)
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

    __table_args__ = (
        Index("ix_recurring_tasks_due", "is_active", "dispatch_status", "next_occurrence_utc"),
    )

    def to_rule(self) -> RecurrenceRule:
        return RecurrenceRule.from_dict({
            "recurrence_type": self.recurrence_type,
            "start_time": self.start_time,
            "due_time": self.due_time,
            "start_days": self.start_days,
            "due_days": self.due_days,
            "start_day_of_month": self.start_day_of_month,
            "due_day_of_month": self.due_day_of_month,
            "is_active": self.is_active,
            "next_occurrence_utc": to_utc_aware(self.next_occurrence_utc),
        })


class Task(Base):
    """A concrete task: either hand-made or one occurrence of a recurring template"""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_uuid)
    recurring_task_id = Column(String(36), ForeignKey("recurring_tasks.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    contact_id = Column(String, nullable=True)
    assigned_to = Column(String, nullable=True)
    priority = Column(String(20), nullable=False, default="Medium")
    status = Column(String(32), nullable=False, default="To Do")
    category = Column(String, nullable=False, default="Other")
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    supporting_documents = Column(JSON, nullable=False, default=list)
    progress_percentage = Column(Integer, nullable=False, default=0)

    reminders = relationship("TaskReminder", back_populates="task", cascade="all, delete-orphan")

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

    __table_args__ = (
        Index("ix_tasks_template_start", "recurring_task_id", "start_date"),
    )


class TaskReminder(Base):
    """Offset rule attached to a task; fires once"""
    __tablename__ = "task_reminders"

    id = Column(String(36), primary_key=True, default=_uuid)
    task_id = Column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    anchor_kind = Column(String(20), nullable=False)
    custom_datetime_utc = Column(DateTime(timezone=True), nullable=True)
    offset_timing = Column(String(10), nullable=False)
    offset_value = Column(Integer, nullable=False, default=0)
    offset_unit = Column(String(10), nullable=False)
    calculated_trigger_utc = Column(DateTime(timezone=True), nullable=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Dispatch bookkeeping
    dispatch_status = Column(String(16), nullable=False, default=STATUS_PENDING)
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    task = relationship("Task", back_populates="reminders", lazy="joined")

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

    __table_args__ = (
        Index("ix_task_reminders_due", "is_sent", "dispatch_status", "calculated_trigger_utc"),
    )

    def to_rule(self) -> ReminderRule:
        return ReminderRule(
            anchor_kind=AnchorKind(self.anchor_kind),
            offset_timing=OffsetTiming(self.offset_timing),
            offset_value=self.offset_value,
            offset_unit=OffsetUnit(self.offset_unit),
            custom_datetime_utc=to_utc_aware(self.custom_datetime_utc),
        )
