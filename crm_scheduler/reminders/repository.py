import logging
import os
import socket
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, Union

from sqlalchemy import case, null, select, update
from sqlalchemy.orm import Session

from crm_scheduler.utils.timezone import now_utc, to_utc_aware
from .models import (
    RecurringTask,
    Task,
    TaskReminder,
    STATUS_CLAIMED,
    STATUS_FAILED,
    STATUS_FIRED,
    STATUS_PENDING,
)

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    REMINDER = "reminder"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class ScheduleAdvance:
    """New state written when a recurring task occurrence has fired."""
    fired_occurrence_utc: datetime
    next_occurrence_utc: datetime


DueItem = Union[TaskReminder, RecurringTask]


def default_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class StoreGateway(ABC):
    """Read/claim/update contract the dispatcher works against.

    Every state transition must be a single conditional update so that several
    dispatcher processes can share one store.
    """

    @abstractmethod
    def list_due_reminders(self, now: datetime, limit: int) -> List[TaskReminder]:
        ...

    @abstractmethod
    def list_due_schedules(self, now: datetime, limit: int) -> List[RecurringTask]:
        ...

    @abstractmethod
    def try_claim(self, kind: ItemKind, item_id: str, expected: datetime) -> bool:
        """Pending -> Claimed, only if the item is still due at ``expected`` and not cancelled."""

    @abstractmethod
    def mark_fired(self, kind: ItemKind, item_id: str, new_state: Optional[ScheduleAdvance] = None) -> bool:
        ...

    @abstractmethod
    def rollback_claim(self, kind: ItemKind, item_id: str, error: str, retry_limit: int) -> Optional[str]:
        """Claimed -> Pending (or Failed once the retry limit is reached). Returns the new status."""

    @abstractmethod
    def mark_failed(self, kind: ItemKind, item_id: str, error: str) -> bool:
        ...

    @abstractmethod
    def release_stale_claims(self, older_than: datetime) -> int:
        ...

    @abstractmethod
    def list_failed(self, kind: ItemKind, limit: int = 100) -> List[DueItem]:
        ...

    @abstractmethod
    def requeue_failed(self, kind: ItemKind, item_id: str) -> bool:
        ...


_MODELS = {
    ItemKind.REMINDER: TaskReminder,
    ItemKind.SCHEDULE: RecurringTask,
}


def _model(kind: ItemKind) -> Type:
    return _MODELS[ItemKind(kind)]


class SqlAlchemyStoreGateway(StoreGateway):
    """StoreGateway over the scheduling tables. Opens a short session per call."""

    def __init__(self, session_factory: Callable[[], Session], owner: Optional[str] = None):
        self.session_factory = session_factory
        self.owner = owner or default_owner_token()

    def list_due_reminders(self, now: datetime, limit: int) -> List[TaskReminder]:
        stmt = (
            select(TaskReminder)
            .where(TaskReminder.is_sent.is_(False))
            .where(TaskReminder.dispatch_status == STATUS_PENDING)
            .where(TaskReminder.calculated_trigger_utc <= to_utc_aware(now))
            .order_by(TaskReminder.calculated_trigger_utc.asc())
            .limit(limit)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).unique().scalars())

    def list_due_schedules(self, now: datetime, limit: int) -> List[RecurringTask]:
        stmt = (
            select(RecurringTask)
            .where(RecurringTask.is_active.is_(True))
            .where(RecurringTask.dispatch_status == STATUS_PENDING)
            .where(RecurringTask.next_occurrence_utc.isnot(None))
            .where(RecurringTask.next_occurrence_utc <= to_utc_aware(now))
            .order_by(RecurringTask.next_occurrence_utc.asc())
            .limit(limit)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars())

    def try_claim(self, kind: ItemKind, item_id: str, expected: datetime) -> bool:
        model = _model(kind)
        stmt = update(model).where(model.id == item_id, model.dispatch_status == STATUS_PENDING)
        if model is TaskReminder:
            stmt = stmt.where(
                TaskReminder.is_sent.is_(False),
                TaskReminder.calculated_trigger_utc == to_utc_aware(expected),
            )
        else:
            stmt = stmt.where(
                RecurringTask.is_active.is_(True),
                RecurringTask.next_occurrence_utc == to_utc_aware(expected),
            )
        stmt = stmt.values(dispatch_status=STATUS_CLAIMED, claim_token=self.owner, claimed_at=now_utc())
        return self._execute(stmt) == 1

    def mark_fired(self, kind: ItemKind, item_id: str, new_state: Optional[ScheduleAdvance] = None) -> bool:
        model = _model(kind)
        stmt = update(model).where(*self._owned(model, item_id))
        if model is TaskReminder:
            stmt = stmt.values(
                is_sent=True,
                sent_at=now_utc(),
                dispatch_status=STATUS_FIRED,
                claim_token=None,
                failure_count=0,
                last_error=None,
            )
        else:
            if new_state is None:
                raise ValueError("A fired schedule needs its next occurrence")
            # the advance was computed from this occurrence
            stmt = stmt.where(
                RecurringTask.next_occurrence_utc == to_utc_aware(new_state.fired_occurrence_utc)
            ).values(
                last_occurrence_utc=to_utc_aware(new_state.fired_occurrence_utc),
                next_occurrence_utc=to_utc_aware(new_state.next_occurrence_utc),
                occurrence_count=RecurringTask.occurrence_count + 1,
                dispatch_status=STATUS_PENDING,
                claim_token=None,
                claimed_at=None,
                failure_count=0,
                last_error=None,
            )
        return self._execute(stmt) == 1

    def rollback_claim(self, kind: ItemKind, item_id: str, error: str, retry_limit: int) -> Optional[str]:
        model = _model(kind)
        next_status = case(
            (model.failure_count + 1 >= retry_limit, STATUS_FAILED),
            else_=STATUS_PENDING,
        )
        stmt = (
            update(model)
            .where(*self._owned(model, item_id))
            .values(
                dispatch_status=next_status,
                failure_count=model.failure_count + 1,
                last_error=error,
                claim_token=None,
                claimed_at=None,
            )
        )
        with self.session_factory() as db:
            result = db.execute(stmt.execution_options(synchronize_session=False))
            db.commit()
            if result.rowcount != 1:
                return None
            return db.execute(select(model.dispatch_status).where(model.id == item_id)).scalar_one_or_none()

    def mark_failed(self, kind: ItemKind, item_id: str, error: str) -> bool:
        model = _model(kind)
        stmt = (
            update(model)
            .where(*self._owned(model, item_id))
            .values(dispatch_status=STATUS_FAILED, last_error=error, claim_token=None, claimed_at=None)
        )
        return self._execute(stmt) == 1

    def release_stale_claims(self, older_than: datetime) -> int:
        released = 0
        for model in _MODELS.values():
            stmt = (
                update(model)
                .where(model.dispatch_status == STATUS_CLAIMED)
                .where(model.claimed_at < to_utc_aware(older_than))
                .values(dispatch_status=STATUS_PENDING, claim_token=None, claimed_at=None)
            )
            released += self._execute(stmt)
        return released

    def list_failed(self, kind: ItemKind, limit: int = 100) -> List[DueItem]:
        model = _model(kind)
        stmt = (
            select(model)
            .where(model.dispatch_status == STATUS_FAILED)
            .order_by(model.updated_at.desc())
            .limit(limit)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).unique().scalars())

    def requeue_failed(self, kind: ItemKind, item_id: str) -> bool:
        model = _model(kind)
        stmt = (
            update(model)
            .where(model.id == item_id, model.dispatch_status == STATUS_FAILED)
            .values(dispatch_status=STATUS_PENDING, failure_count=0, last_error=None)
        )
        return self._execute(stmt) == 1

    def _owned(self, model, item_id: str):
        return (
            model.id == item_id,
            model.dispatch_status == STATUS_CLAIMED,
            model.claim_token == self.owner,
        )

    def _execute(self, stmt) -> int:
        with self.session_factory() as db:
            result = db.execute(stmt.execution_options(synchronize_session=False))
            db.commit()
            return result.rowcount


# --- Write-side helpers used by the services ---

def get_recurring_task(db: Session, recurring_task_id: str) -> Optional[RecurringTask]:
    return db.get(RecurringTask, recurring_task_id)


def list_recurring_tasks(
    db: Session,
    recurrence_type: Optional[str] = None,
    assigned_to: Optional[str] = None,
    contact_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    priority: Optional[str] = None,
    limit: int = 100,
) -> List[RecurringTask]:
    stmt = select(RecurringTask).order_by(RecurringTask.created_at.desc()).limit(limit)
    if recurrence_type:
        stmt = stmt.where(RecurringTask.recurrence_type == recurrence_type)
    if assigned_to:
        stmt = stmt.where(RecurringTask.assigned_to == assigned_to)
    if contact_id:
        stmt = stmt.where(RecurringTask.contact_id == contact_id)
    if is_active is not None:
        stmt = stmt.where(RecurringTask.is_active.is_(is_active))
    if priority:
        stmt = stmt.where(RecurringTask.priority == priority.lower())
    return list(db.execute(stmt).scalars())


def get_task(db: Session, task_id: str) -> Optional[Task]:
    return db.get(Task, task_id)


def get_reminder(db: Session, reminder_id: str) -> Optional[TaskReminder]:
    return db.get(TaskReminder, reminder_id)


def list_task_reminders(db: Session, task_id: str) -> List[TaskReminder]:
    stmt = (
        select(TaskReminder)
        .where(TaskReminder.task_id == task_id)
        .order_by(TaskReminder.calculated_trigger_utc.asc())
    )
    return list(db.execute(stmt).unique().scalars())


def list_unsent_reminders(db: Session, task_id: str) -> List[TaskReminder]:
    stmt = (
        select(TaskReminder)
        .where(TaskReminder.task_id == task_id)
        .where(TaskReminder.is_sent.is_(False))
    )
    return list(db.execute(stmt).unique().scalars())


def find_task_for_occurrence(
    db: Session, recurring_task_id: str, day_start_utc: datetime, day_end_utc: datetime
) -> Optional[Task]:
    stmt = (
        select(Task)
        .where(Task.recurring_task_id == recurring_task_id)
        .where(Task.start_date >= day_start_utc)
        .where(Task.start_date < day_end_utc)
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def failed_reset_values(model) -> Dict[str, Any]:
    """SET clauses returning a Failed item to Pending; any other status is kept."""
    failed = model.dispatch_status == STATUS_FAILED
    return {
        "dispatch_status": case((failed, STATUS_PENDING), else_=model.dispatch_status),
        "failure_count": case((failed, 0), else_=model.failure_count),
        "last_error": case((failed, null()), else_=model.last_error),
    }


def apply_edit(db: Session, model, item_id: str, values: Dict[str, Any], *conditions) -> int:
    """Write an edit unless a dispatcher currently holds a claim on the item.

    Returns the number of rows changed; the caller decides what a miss means.
    """
    stmt = (
        update(model)
        .where(model.id == item_id, model.dispatch_status != STATUS_CLAIMED, *conditions)
        .values(**values, **failed_reset_values(model))
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount


def dispatch_status_of(db: Session, model, item_id: str) -> Optional[str]:
    return db.execute(select(model.dispatch_status).where(model.id == item_id)).scalar_one_or_none()
