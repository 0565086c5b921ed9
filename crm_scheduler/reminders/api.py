from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from crm_scheduler.db.session import SessionLocal, get_db
from .exceptions import ImmutableStateError, ItemBusyError, NotFoundError, SchedulerError, ValidationError
from .repository import ItemKind, SqlAlchemyStoreGateway, StoreGateway
from .schemas import (
    FailedItemRead,
    OccurrencePreview,
    RecurringTaskCreate,
    RecurringTaskRead,
    RecurringTaskUpdate,
    TaskCreate,
    TaskDatesUpdate,
    TaskRead,
    TaskReminderCreate,
    TaskReminderRead,
    TaskReminderUpdate,
)
from .service import RecurringTaskService, TaskReminderService


router = APIRouter()


def get_gateway() -> StoreGateway:
    return SqlAlchemyStoreGateway(SessionLocal)


def _http_error(exc: SchedulerError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.errors)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ImmutableStateError, ItemBusyError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# --- Recurring task templates ---

@router.post("/recurring-tasks", response_model=RecurringTaskRead, status_code=201)
def create_recurring_task_endpoint(payload: RecurringTaskCreate, db: Session = Depends(get_db)):
    try:
        return RecurringTaskService(db).create_recurring_task(payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.get("/recurring-tasks", response_model=List[RecurringTaskRead])
def list_recurring_tasks_endpoint(
    recurrence_type: Optional[str] = None,
    assigned_to: Optional[str] = None,
    contact_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    priority: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return RecurringTaskService(db).list_recurring_tasks(
        recurrence_type=recurrence_type,
        assigned_to=assigned_to,
        contact_id=contact_id,
        is_active=is_active,
        priority=priority,
        limit=limit,
    )


@router.get("/recurring-tasks/{recurring_task_id}", response_model=RecurringTaskRead)
def get_recurring_task_endpoint(recurring_task_id: str, db: Session = Depends(get_db)):
    try:
        return RecurringTaskService(db).get_recurring_task(recurring_task_id)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.patch("/recurring-tasks/{recurring_task_id}", response_model=RecurringTaskRead)
def update_recurring_task_endpoint(
    recurring_task_id: str, payload: RecurringTaskUpdate, db: Session = Depends(get_db)
):
    """Edit a template; rule changes and re-activation recompute the next occurrence."""
    try:
        return RecurringTaskService(db).update_recurring_task(recurring_task_id, payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.get("/recurring-tasks/{recurring_task_id}/preview", response_model=List[OccurrencePreview])
def preview_recurring_task_endpoint(
    recurring_task_id: str,
    count: int = Query(5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    try:
        return RecurringTaskService(db).preview_occurrences(recurring_task_id, count)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


# --- Tasks and their reminders ---

@router.post("/tasks", response_model=TaskRead, status_code=201)
def create_task_endpoint(payload: TaskCreate, db: Session = Depends(get_db)):
    try:
        return TaskReminderService(db).create_task(payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task_endpoint(task_id: str, db: Session = Depends(get_db)):
    try:
        return TaskReminderService(db).get_task(task_id)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.put("/tasks/{task_id}/dates", response_model=TaskRead)
def update_task_dates_endpoint(task_id: str, payload: TaskDatesUpdate, db: Session = Depends(get_db)):
    """Move a task's start/due dates; unsent reminders anchored on them follow."""
    try:
        return TaskReminderService(db).update_task_dates(task_id, payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.post("/tasks/{task_id}/reminders", response_model=TaskReminderRead, status_code=201)
def create_reminder_endpoint(task_id: str, payload: TaskReminderCreate, db: Session = Depends(get_db)):
    try:
        return TaskReminderService(db).create_reminder(task_id, payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.get("/tasks/{task_id}/reminders", response_model=List[TaskReminderRead])
def list_reminders_endpoint(task_id: str, db: Session = Depends(get_db)):
    try:
        return TaskReminderService(db).list_reminders(task_id)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.patch("/reminders/{reminder_id}", response_model=TaskReminderRead)
def update_reminder_endpoint(reminder_id: str, payload: TaskReminderUpdate, db: Session = Depends(get_db)):
    try:
        return TaskReminderService(db).update_reminder(reminder_id, payload)
    except SchedulerError as exc:
        raise _http_error(exc) from exc


@router.delete("/reminders/{reminder_id}", status_code=204)
def delete_reminder_endpoint(reminder_id: str, db: Session = Depends(get_db)):
    try:
        TaskReminderService(db).delete_reminder(reminder_id)
    except SchedulerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# --- Dispatch administration ---

@router.get("/dispatch/failed", response_model=List[FailedItemRead])
def list_failed_endpoint(
    kind: ItemKind = ItemKind.REMINDER,
    limit: int = Query(100, ge=1, le=1000),
    gateway: StoreGateway = Depends(get_gateway),
):
    return [
        FailedItemRead(
            kind=kind.value,
            id=str(item.id),
            failure_count=item.failure_count,
            last_error=item.last_error,
            updated_at=item.updated_at,
        )
        for item in gateway.list_failed(kind, limit)
    ]


@router.post("/dispatch/failed/{kind}/{item_id}/requeue")
def requeue_failed_endpoint(kind: ItemKind, item_id: str, gateway: StoreGateway = Depends(get_gateway)):
    if not gateway.requeue_failed(kind, item_id):
        raise HTTPException(status_code=404, detail=f"No failed {kind.value} with id {item_id}")
    return {"requeued": True, "kind": kind.value, "id": item_id}


@router.get("/health")
def health_check():
    return {"status": "healthy", "service": "scheduling"}
